import re
import time
from pathlib import Path
from typing import Optional
from uuid import UUID

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("attachment_storage")

_WHITESPACE = re.compile(r"\s+")


def build_storage_key(tenant_id: UUID, message_id: UUID, filename: str, *, epoch_ms: Optional[int] = None) -> str:
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    safe_name = _WHITESPACE.sub("_", (filename or "attachment").strip()) or "attachment"
    safe_name = safe_name.replace("/", "_").replace("\\", "_")
    return f"{tenant_id}/{message_id}/{epoch_ms}_{safe_name}"


class LocalAttachmentStore:
    """Attachment blobs on the local filesystem, addressed by storage key."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.attachment_storage_dir)

    def put(self, key: str, data: bytes) -> str:
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return key

    def get(self, key: str) -> bytes:
        return (self.root / key).read_bytes()


def store_attachment(
    store: LocalAttachmentStore,
    *,
    tenant_id: UUID,
    message_id: UUID,
    filename: str,
    data: bytes,
) -> tuple[Optional[str], Optional[str]]:
    """Write one attachment. Returns (storage_key, upload_error); exactly one is set."""
    key = build_storage_key(tenant_id, message_id, filename)
    try:
        store.put(key, data)
    except OSError as exc:
        logger.warning(
            "Attachment upload failed",
            extra={"context": {"message_id": str(message_id), "filename": filename, "error": str(exc)}},
        )
        return None, str(exc)
    return key, None
