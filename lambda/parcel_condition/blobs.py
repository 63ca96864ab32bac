"""
Blob storage - S3 operations for condition photos.

Photos are stored under opaque storage ids. Clients that upload directly
get a presigned URL; server-side callers upload raw bytes.
"""

import logging
import uuid

import boto3

from parcel_condition.models import UploadError
from parcel_condition.config import PHOTO_BUCKET, PHOTO_KEY_PREFIX, UPLOAD_URL_EXPIRY_S

logger = logging.getLogger(__name__)


# --- S3 client cache ---

_s3 = None


def _get_client():
    """Lazy-initialized S3 client with caching."""
    global _s3

    if _s3 is not None:
        return _s3

    _s3 = boto3.client("s3")
    return _s3


# --- Public API ---

def generate_upload_url(content_type: str = "image/jpeg") -> tuple[str, str]:
    """
    Presigned PUT URL for a direct client upload.

    Returns (url, storage_id). The storage id is what gets recorded on the
    condition record once the upload completes.

    Raises:
        UploadError: If the URL cannot be generated.
    """
    storage_id = _new_storage_id()
    try:
        url = _get_client().generate_presigned_url(
            "put_object",
            Params={"Bucket": PHOTO_BUCKET, "Key": storage_id, "ContentType": content_type},
            ExpiresIn=UPLOAD_URL_EXPIRY_S,
        )
        return url, storage_id
    except Exception as e:
        raise UploadError(f"Failed to generate upload URL: {e}")


def upload(image_bytes: bytes, content_type: str = "image/jpeg") -> str:
    """
    Uploads raw photo bytes. Returns the opaque storage id.

    Raises:
        UploadError: If the S3 write fails.
    """
    storage_id = _new_storage_id()
    try:
        _get_client().put_object(
            Bucket=PHOTO_BUCKET,
            Key=storage_id,
            Body=image_bytes,
            ContentType=content_type,
        )
        logger.debug("Uploaded %d bytes as %s", len(image_bytes), storage_id)
        return storage_id
    except Exception as e:
        raise UploadError(f"Failed to upload photo: {e}")


def download(storage_id: str) -> bytes:
    """
    Fetches photo bytes by storage id.

    Raises:
        UploadError: If the S3 read fails.
    """
    try:
        response = _get_client().get_object(Bucket=PHOTO_BUCKET, Key=storage_id)
        return response["Body"].read()
    except Exception as e:
        raise UploadError(f"Failed to download photo {storage_id}: {e}")


def clear_client_cache() -> None:
    """Clears cached S3 client. Testing only."""
    global _s3
    _s3 = None


def _new_storage_id() -> str:
    return f"{PHOTO_KEY_PREFIX}{uuid.uuid4().hex}"
