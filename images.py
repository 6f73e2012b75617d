"""
Image hosting on Cloudinary.

The uploader is built once at startup from validated settings and handed to the
upload route through `get_uploader`; only the returned URL and public id are
ever stored.
"""

import base64
import logging
from typing import Optional

import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError
from fastapi import HTTPException, Request

from settings import Settings

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")
MAX_IMAGES = 10


class ImageHostingNotConfigured(RuntimeError):
    pass


class ImageUploadFailed(RuntimeError):
    pass


def to_data_uri(content: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(content).decode('utf-8')}"


class CloudinaryUploader:
    def __init__(self, cloud_name: str, api_key: str, api_secret: str, folder: str):
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.folder = folder

    @classmethod
    def from_settings(cls, settings: Settings) -> "CloudinaryUploader":
        missing = [
            name for name in ("CLOUDINARY_CLOUD_NAME", "CLOUDINARY_API_KEY", "CLOUDINARY_API_SECRET")
            if not getattr(settings, name)
        ]
        if missing:
            raise ImageHostingNotConfigured(f"Missing settings: {', '.join(missing)}")
        return cls(
            settings.CLOUDINARY_CLOUD_NAME,
            settings.CLOUDINARY_API_KEY,
            settings.CLOUDINARY_API_SECRET,
            settings.CLOUDINARY_UPLOAD_FOLDER,
        )

    def upload(self, data_uri: str, folder: Optional[str] = None) -> dict:
        if not data_uri:
            raise ValueError("No image data provided")
        try:
            result = cloudinary.uploader.upload(
                data_uri,
                folder=folder or self.folder,
                resource_type="image",
                transformation=[{"quality": "auto", "fetch_format": "auto"}],
                cloud_name=self.cloud_name,
                api_key=self.api_key,
                api_secret=self.api_secret,
                secure=True,
            )
        except CloudinaryError as e:
            logger.error(f"Cloudinary upload failed: {e}")
            raise ImageUploadFailed(str(e)) from e
        return {
            "publicId": result["public_id"],
            "url": result["secure_url"],
            "width": result.get("width"),
            "height": result.get("height"),
            "format": result.get("format"),
            "bytes": result.get("bytes"),
        }


def build_uploader(settings: Settings) -> Optional[CloudinaryUploader]:
    """The configured uploader, or None (uploads disabled) when Cloudinary settings are incomplete."""
    try:
        return CloudinaryUploader.from_settings(settings)
    except ImageHostingNotConfigured as e:
        logger.warning(f"Image uploads disabled: {e}")
        return None


def get_uploader(request: Request) -> CloudinaryUploader:
    uploader = getattr(request.app.state, "uploader", None)
    if uploader is None:
        raise HTTPException(status_code=503, detail="Image uploads are not configured")
    return uploader
