from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from caseflow.core.config import settings

logger = logging.getLogger(__name__)


def sanitize_file_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", name or "") or "upload.xlsx"


def production_storage_path(shipment_id: str, file_name: str, *, now_ms: int | None = None) -> str:
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"shipments/{shipment_id}/production/{timestamp}-{sanitize_file_name(file_name)}"


@dataclass
class StoredObject:
    storage_path: str
    download_url: str
    file_name: str


class LocalStorageBackend:
    """Filesystem archive for original spreadsheets, addressed by storage path."""

    def __init__(self, root: str | Path | None = None, public_base_url: str | None = None):
        self.root = Path(root or settings.STORAGE_ROOT).resolve()
        base_url = settings.STORAGE_PUBLIC_BASE_URL if public_base_url is None else public_base_url
        self.public_base_url = (base_url or "").rstrip("/")

    def _resolve(self, storage_path: str) -> Path:
        target = (self.root / storage_path).resolve()
        if self.root != target and self.root not in target.parents:
            raise ValueError(f"storage path escapes storage root: {storage_path}")
        return target

    def download_url(self, storage_path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{quote(storage_path)}"
        return self._resolve(storage_path).as_uri()

    def save(
        self,
        *,
        shipment_id: str,
        file_name: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> StoredObject:
        storage_path = production_storage_path(shipment_id, file_name)
        target = self._resolve(storage_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        logger.info(
            "production_file_stored shipment=%s path=%s bytes=%s content_type=%s",
            shipment_id,
            storage_path,
            len(content),
            content_type,
        )
        return StoredObject(
            storage_path=storage_path,
            download_url=self.download_url(storage_path),
            file_name=file_name,
        )

    def exists(self, storage_path: str) -> bool:
        return self._resolve(storage_path).is_file()

    def delete(self, storage_path: str) -> bool:
        target = self._resolve(storage_path)
        if not target.is_file():
            return False
        target.unlink()
        return True
