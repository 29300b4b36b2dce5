"""
Proof-of-delivery blob store (local disk served under MEDIA_BASE_URL).
Only the returned URI is kept on the order.
"""
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from fastapi import UploadFile

from config import settings
from core.exceptions import DispatchValidationError, StorageUnavailable

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    "image/jpeg": ".jpg",
    "image/png":  ".png",
    "image/webp": ".webp",
}


def proof_dir(order_id: str) -> Path:
    return Path(settings.PROOF_UPLOAD_DIR) / order_id


def validate_image(content_type: str, size: int) -> str:
    """Returns the file extension for an accepted upload."""
    ext = ALLOWED_MIME_TYPES.get(content_type or "")
    if not ext:
        raise DispatchValidationError(
            f"Invalid content type. Allowed types: {', '.join(ALLOWED_MIME_TYPES)}"
        )
    if size == 0:
        raise DispatchValidationError("Empty image")
    if size > settings.MAX_PROOF_IMAGE_BYTES:
        raise DispatchValidationError(
            f"File size too large. Maximum size allowed is {settings.MAX_PROOF_IMAGE_BYTES // (1024 * 1024)}MB"
        )
    return ext


def store_proof_bytes(order_id: str, content: bytes, content_type: str) -> str:
    ext = validate_image(content_type, len(content))
    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    filename = f"{stamp}_{uuid.uuid4().hex[:8]}{ext}"
    try:
        target_dir = proof_dir(order_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / filename).write_bytes(content)
    except OSError as exc:
        logger.error("Proof upload failed for order %s: %s", order_id, exc)
        raise StorageUnavailable("Image upload failed, please retry") from exc
    return f"{settings.MEDIA_BASE_URL.rstrip('/')}/{order_id}/{filename}"


async def save_proof_image(order_id: str, upload: UploadFile) -> str:
    content = await upload.read()
    uri = store_proof_bytes(order_id, content, upload.content_type)
    logger.info("Proof image stored for order %s", order_id)
    return uri
