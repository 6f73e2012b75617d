from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings, loaded from environment variables (and `.env` when present).
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "AgriLink API"

    # JWT / Auth
    SECRET_KEY: str = Field("devsecretkey", description="Secret used to sign access tokens")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # MongoDB
    DATABASE_URL: Optional[str] = Field(None, description="MongoDB connection string")
    DATABASE_NAME: str = Field("agrilink", description="MongoDB database name")

    CORS_ORIGINS: List[str] = ["*"]
    LOG_LEVEL: str = "INFO"

    # Email (SMTP)
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    EMAIL_FROM: str = "no-reply@agrilink.lk"
    FRONTEND_URL: str = "http://localhost:3000"

    # Image hosting (Cloudinary)
    CLOUDINARY_CLOUD_NAME: Optional[str] = None
    CLOUDINARY_API_KEY: Optional[str] = None
    CLOUDINARY_API_SECRET: Optional[str] = None
    CLOUDINARY_UPLOAD_FOLDER: str = "agrilink/uploads"

    # Admin seed
    SEED_ADMIN: bool = True
    ADMIN_EMAIL: str = "admin123@gmail.com"
    ADMIN_PASSWORD: str = "admin 123"

    ORDER_NUMBER_RETRIES: int = Field(5, ge=1)

    @property
    def smtp_configured(self) -> bool:
        return bool(self.SMTP_HOST)


@lru_cache
def get_settings() -> Settings:
    return Settings()
