"""
Shared pytest fixtures: an in-memory MongoDB (mongomock), a TestClient wired to
it, recording stand-ins for the email and image collaborators, and factories
for users and products.
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# Keep app startup side effects out of the tests
os.environ["SEED_ADMIN"] = "false"
os.environ.pop("DATABASE_URL", None)

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from database import ensure_indexes, get_db
from images import CloudinaryUploader, get_uploader
from main import app
from notifications import EmailService, get_mailer
from settings import get_settings


@pytest.fixture
def db():
    database = mongomock.MongoClient()["agrilink_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def mailer():
    return MagicMock(spec=EmailService)


@pytest.fixture
def uploader():
    fake = MagicMock(spec=CloudinaryUploader)
    fake.upload.side_effect = lambda data_uri, folder=None: {
        "url": "https://res.cloudinary.com/demo/image/upload/v1/agrilink/img.png",
        "publicId": "agrilink/img",
    }
    return fake


@pytest.fixture
def client(db, mailer, uploader):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_uploader] = lambda: uploader
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_header(user: dict) -> dict:
    token = create_access_token({"sub": str(user["_id"]), "role": user["role"]}, get_settings())
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def factory(role="buyer", verified=True, approved=False, active=True, password_hash="x"):
        counter["n"] += 1
        doc = {
            "firstName": role.capitalize(),
            "lastName": f"User{counter['n']}",
            "email": f"{role}{counter['n']}@example.com",
            "phone": "0771234567",
            "passwordHash": password_hash,
            "role": role,
            "isVerified": verified,
            "isExporterApproved": approved,
            "isActive": active,
            "createdAt": datetime.now(timezone.utc),
        }
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        doc["id"] = str(doc["_id"])
        return doc

    return factory


def product_doc(farmer_id: str, **overrides) -> dict:
    now = datetime.now(timezone.utc)
    doc = {
        "farmer": farmer_id,
        "name": "Carrots",
        "category": "root-vegetables",
        "variety": "Nantes",
        "description": "Fresh upcountry carrots, washed and graded.",
        "quantity": {"available": 10, "unit": "kg", "minimumOrder": 1},
        "quality": {"grade": "A", "certification": []},
        "pricing": {"pricePerUnit": 2.5, "currency": "USD"},
        "harvest": {
            "harvestDate": now - timedelta(days=1),
            "expiryDate": now + timedelta(days=14),
            "storageConditions": "Cool and dry",
        },
        "location": {"farmLocation": "Nuwara Eliya", "district": "Nuwara Eliya"},
        "images": [],
        "exportDetails": {"isExportReady": True},
        "status": "available",
        "views": 0,
        "inquiries": [],
        "isVerified": True,
        "createdAt": now,
    }
    for key, value in overrides.items():
        doc[key] = value
    return doc


@pytest.fixture
def make_product(db):
    def factory(farmer: dict, **overrides):
        doc = product_doc(farmer["id"], **overrides)
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        return doc

    return factory


@pytest.fixture
def headers():
    return auth_header


@pytest.fixture
def product_payload():
    """Request body for POST /products."""
    def factory():
        now = datetime.now(timezone.utc)
        return {
            "name": "Carrots",
            "category": "root-vegetables",
            "variety": "Nantes",
            "description": "Fresh upcountry carrots, washed and graded.",
            "quantity": {"available": 10, "unit": "kg", "minimumOrder": 1},
            "quality": {"grade": "A"},
            "pricing": {"pricePerUnit": 2.5, "currency": "USD"},
            "harvest": {
                "harvestDate": (now - timedelta(days=1)).isoformat(),
                "expiryDate": (now + timedelta(days=14)).isoformat(),
                "storageConditions": "Cool and dry",
            },
            "location": {"farmLocation": "Nuwara Eliya", "district": "Nuwara Eliya"},
            "exportDetails": {"isExportReady": True},
        }

    return factory
