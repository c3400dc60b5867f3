from __future__ import annotations

import hashlib
import logging
import mimetypes
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from config import get_settings


logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/png", "image/gif", "application/pdf")
PUBLIC_ID_PATTERN = re.compile(r"expense-([0-9a-f]{16})-\d+-[0-9a-f]{8}")


class ReceiptStorageError(RuntimeError):
    pass


def owner_tag(user_id: str) -> str:
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:16]


def owns_receipt(user_id: str, public_id: Optional[str]) -> bool:
    """True when ``public_id`` has the upload format and was issued to ``user_id``."""
    match = PUBLIC_ID_PATTERN.fullmatch(public_id or "")
    return bool(match) and match.group(1) == owner_tag(user_id)


@dataclass(frozen=True)
class StoredReceipt:
    url: str
    public_id: str


class ReceiptStorage(Protocol):
    def upload(
        self, user_id: str, filename: str, content_type: str, content: bytes
    ) -> StoredReceipt: ...

    def release(self, public_id: str) -> bool: ...


class LocalReceiptStorage:
    """Keeps receipts on local disk under the configured receipts directory."""

    def __init__(
        self,
        root: Optional[Path] = None,
        base_url: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.root = Path(root or settings.receipts_dir)
        self.base_url = (base_url or settings.receipt_base_url).rstrip("/")
        self.max_bytes = max_bytes or settings.receipt_max_bytes

    def validate(self, content_type: str, size: int) -> None:
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise ValueError("Invalid file type. Only images and PDFs are allowed.")
        if size == 0:
            raise ValueError("Empty file")
        if size > self.max_bytes:
            limit_mb = self.max_bytes / (1024 * 1024)
            raise ValueError(f"File size must be less than {limit_mb:g}MB")

    def upload(
        self, user_id: str, filename: str, content_type: str, content: bytes
    ) -> StoredReceipt:
        self.validate(content_type, len(content))
        suffix = Path(filename or "").suffix.lower()
        if not suffix:
            suffix = mimetypes.guess_extension(content_type) or ""
        stamp = int(time.time())
        public_id = f"expense-{owner_tag(user_id)}-{stamp}-{uuid.uuid4().hex[:8]}"
        name = f"{public_id}{suffix}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            (self.root / name).write_bytes(content)
        except OSError as exc:
            raise ReceiptStorageError("Failed to store receipt") from exc
        logger.info(f"receipt_upload: public_id={public_id} bytes={len(content)}")
        return StoredReceipt(url=f"{self.base_url}/{name}", public_id=public_id)

    def release(self, public_id: str) -> bool:
        if not PUBLIC_ID_PATTERN.fullmatch(public_id or "") or not self.root.is_dir():
            return False
        matches = [
            path
            for path in self.root.iterdir()
            if path.is_file() and path.stem == public_id
        ]
        if not matches:
            return False
        try:
            for path in matches:
                path.unlink()
        except OSError as exc:
            raise ReceiptStorageError(f"Failed to release receipt {public_id}") from exc
        return True


def release_quietly(
    storage: Optional[ReceiptStorage], public_id: Optional[str]
) -> None:
    """Best-effort cleanup; failures are logged and never raised."""
    if storage is None or not public_id:
        return
    try:
        released = storage.release(public_id)
    except (ReceiptStorageError, OSError) as exc:
        logger.warning(f"receipt_release_failed: public_id={public_id} error={exc}")
        return
    if not released:
        logger.info(f"receipt_release: public_id={public_id} not found")
