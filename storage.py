"""
Document storage for prescriptions and test results.

Files go to a private S3 bucket when one is configured and are read back
through presigned URLs; otherwise they are written under the local upload
directory.
"""
import logging
import os
import uuid
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from werkzeug.utils import secure_filename

from config import settings
from database import utcnow
from schemas import StoredFile

logger = logging.getLogger(__name__)

ALLOWED_MIMETYPES = {"image/jpeg", "image/png", "image/webp", "application/pdf"}


class StorageError(Exception):
    pass


def s3_configured() -> bool:
    return bool(settings.AWS_S3_BUCKET)


def _s3_client():
    return boto3.client("s3", region_name=settings.AWS_REGION)


def generate_key(original_name: str, folder: str) -> str:
    name = secure_filename(original_name or "") or "document"
    return f"{folder}/{utcnow():%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}_{name}"


def save_file(content: bytes, original_name: str, mimetype: Optional[str], folder: str) -> StoredFile:
    """Store one uploaded file and describe where it went."""
    if mimetype not in ALLOWED_MIMETYPES:
        raise StorageError(f"Unsupported file type for {original_name}: {mimetype}")
    if len(content) > settings.MAX_UPLOAD_SIZE:
        raise StorageError(f"{original_name} exceeds the {settings.MAX_UPLOAD_SIZE // (1024 * 1024)}MB limit")

    key = generate_key(original_name, folder)
    if s3_configured():
        try:
            _s3_client().put_object(
                Bucket=settings.AWS_S3_BUCKET,
                Key=key,
                Body=content,
                ContentType=mimetype,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("[STORAGE] S3 upload failed for %s: %s", original_name, e)
            raise StorageError(f"Failed to upload {original_name}: {e}")
        storage_type = "s3"
        logger.info("[STORAGE] Uploaded %s to S3: %s", original_name, key)
    else:
        path = Path(settings.UPLOAD_DIR) / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        storage_type = "local"
        logger.info("[STORAGE] Stored %s locally: %s", original_name, key)

    return StoredFile(
        key=key,
        original_name=original_name,
        mimetype=mimetype,
        size=len(content),
        storage_type=storage_type,
        uploaded_at=utcnow(),
    )


def signed_url(stored: dict, expires_in: Optional[int] = None) -> str:
    """Time-limited link for a stored file."""
    expires_in = expires_in or settings.SIGNED_URL_EXPIRY_SECONDS
    if stored.get("storage_type") == "s3":
        try:
            return _s3_client().generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": settings.AWS_S3_BUCKET, "Key": stored["key"]},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not sign URL: {e}")
    return "/uploads/" + stored["key"].replace(os.sep, "/")
