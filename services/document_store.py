"""Receipt validation and local-directory blob store."""

from __future__ import annotations

import logging
import os
import uuid
from typing import Optional

from werkzeug.utils import secure_filename

from errors import ExternalDependencyError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_RECEIPT_BYTES = 5 * 1024 * 1024
ALLOWED_RECEIPT_TYPES = {
    "application/pdf": {"pdf"},
    "image/jpeg": {"jpg", "jpeg"},
    "image/png": {"png"},
}
ALLOWED_EXTENSIONS = set().union(*ALLOWED_RECEIPT_TYPES.values())


def validate_receipt(
    filename: Optional[str],
    content_type: Optional[str],
    size: int,
    max_bytes: int = MAX_RECEIPT_BYTES,
) -> None:
    """Raise :class:`ValidationError` (key ``receiptFile``) for unusable uploads."""
    if not filename:
        raise ValidationError({"receiptFile": "Receipt file is required"})
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationError({"receiptFile": "Receipt must be a PDF, JPEG or PNG file"})
    if content_type and content_type not in ALLOWED_RECEIPT_TYPES:
        raise ValidationError({"receiptFile": f"Unsupported receipt type {content_type}"})
    if size <= 0:
        raise ValidationError({"receiptFile": "Receipt file is empty"})
    if size > max_bytes:
        raise ValidationError(
            {"receiptFile": f"Receipt exceeds the {max_bytes // (1024 * 1024)} MB limit"}
        )


class DocumentStore:
    """Stores blobs under *base_dir* and hands out opaque handles."""

    def __init__(self, base_dir: str, max_bytes: int = MAX_RECEIPT_BYTES):
        self.base_dir = base_dir
        self.max_bytes = max_bytes

    def _path(self, handle: str) -> str:
        name = secure_filename(handle)
        if not name or name != handle:
            raise NotFoundError(f"Unknown document handle {handle!r}.")
        return os.path.join(self.base_dir, name)

    def store_receipt(self, upload) -> str:
        """Validate and save a werkzeug ``FileStorage``; returns its handle."""
        data = upload.read()
        validate_receipt(upload.filename, upload.mimetype, len(data), self.max_bytes)
        handle = f"{uuid.uuid4().hex}_{secure_filename(upload.filename)}"
        try:
            os.makedirs(self.base_dir, exist_ok=True)
            with open(os.path.join(self.base_dir, handle), "wb") as fh:
                fh.write(data)
        except OSError as exc:
            logger.error("Could not store receipt %s: %s", upload.filename, exc)
            raise ExternalDependencyError("Receipt storage is unavailable; please retry.") from exc
        logger.info("Stored receipt %s (%d bytes)", handle, len(data))
        return handle

    def exists(self, handle: str) -> bool:
        return os.path.isfile(self._path(handle))

    def delete(self, handle: str) -> None:
        path = self._path(handle)
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise ExternalDependencyError(f"Could not delete document {handle}.") from exc

    def require(self, handle) -> str:
        """Return *handle* when it names a stored document; raise ValidationError otherwise."""
        try:
            found = self.exists(str(handle))
        except NotFoundError:
            found = False
        if not found:
            raise ValidationError({"receiptFile": f"Receipt {handle!r} has not been uploaded"})
        return str(handle)
