import logging
from datetime import datetime, timezone

from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import get_password_hash
from settings import Settings

logger = logging.getLogger(__name__)


def seed_admin_user(db: Database, settings: Settings) -> dict:
    """Create the admin account once; later boots find it and do nothing."""
    email = settings.ADMIN_EMAIL.lower()
    try:
        if db["user"].find_one({"email": email}):
            return {"created": False, "message": "Admin user already exists"}
        now = datetime.now(timezone.utc)
        db["user"].insert_one({
            "firstName": "Admin",
            "lastName": "User",
            "email": email,
            "phone": "0771234567",
            "passwordHash": get_password_hash(settings.ADMIN_PASSWORD),
            "role": "admin",
            "isVerified": True,
            "isExporterApproved": False,
            "isActive": True,
            "address": {"city": "Colombo", "district": "Colombo"},
            "createdAt": now,
            "updatedAt": now,
        })
    except PyMongoError as e:
        logger.error(f"Admin seed error: {e}")
        return {"created": False, "error": str(e)}
    logger.info(f"Admin user {email} seeded")
    return {"created": True, "message": "Admin user created"}
