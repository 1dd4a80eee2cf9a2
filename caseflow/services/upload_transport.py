from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol

import requests
from urllib3.filepost import encode_multipart_formdata

from caseflow.core.config import settings
from caseflow.core.flow_filter import UPLOAD, flow_logger
from caseflow.schemas.production import UploadResponse
from caseflow.services.production_errors import UploadError
from caseflow.services.production_workbook_service import IncomingFile
from caseflow.services.storage_backend import LocalStorageBackend

logger = flow_logger(__name__)

ProgressCallback = Callable[[int], None]

UPLOAD_PATH = "/api/production/upload"


@dataclass
class UploadResult:
    storage_path: str | None = None
    download_url: str | None = None
    file_name: str | None = None

    @property
    def archived(self) -> bool:
        return bool(self.storage_path or self.download_url)


class UploadTransport(Protocol):
    def upload(
        self,
        incoming: IncomingFile,
        shipment_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> UploadResult:
        ...


class _ProgressBody:
    """File-like request body that reports percent sent on every read."""

    def __init__(self, payload: bytes, on_progress: ProgressCallback | None):
        self._payload = payload
        self._offset = 0
        self._on_progress = on_progress
        self._last_percent = -1

    def __len__(self) -> int:
        return len(self._payload)

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = len(self._payload) - self._offset
        chunk = self._payload[self._offset : self._offset + size]
        self._offset += len(chunk)
        self._report()
        return chunk

    def _report(self) -> None:
        if self._on_progress is None or not self._payload:
            return
        percent = round(self._offset / len(self._payload) * 100)
        # Ticks never move backwards even if the transport re-reads.
        percent = max(percent, self._last_percent)
        self._last_percent = percent
        self._on_progress(percent)


def _error_message(body: Any, status_code: int) -> str:
    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, dict):
            body = detail
        elif isinstance(detail, str) and detail:
            return detail
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    return f"HTTP {status_code}"


class ServerUploadTransport:
    """Primary path: multipart POST to the backend's upload endpoint with progress."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        session: Any | None = None,
        timeout_seconds: float | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = (base_url or settings.PRODUCTION_API_URL).rstrip("/")
        self.session = session or requests.Session()
        self.timeout_seconds = float(timeout_seconds or settings.PRODUCTION_UPLOAD_TIMEOUT_SECONDS)
        self.headers = dict(headers or {})

    def upload(
        self,
        incoming: IncomingFile,
        shipment_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> UploadResult:
        body, content_type = encode_multipart_formdata(
            {
                "file": (incoming.filename, incoming.content, incoming.content_type),
                "shipmentId": shipment_id,
            }
        )
        headers = {**self.headers, "Content-Type": content_type}
        try:
            response = self.session.post(
                f"{self.base_url}{UPLOAD_PATH}",
                data=_ProgressBody(body, on_progress),
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise UploadError(message=f"Network error during upload: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not 200 <= response.status_code < 300:
            raise UploadError(message=_error_message(payload, response.status_code))
        if not isinstance(payload, dict):
            raise UploadError(message="Upload endpoint returned a malformed response")

        parsed = UploadResponse.model_validate(payload)
        return UploadResult(
            storage_path=parsed.storage_path,
            download_url=parsed.download_url,
            file_name=parsed.file_name or incoming.filename,
        )


class DirectStorageTransport:
    """Secondary path: write straight to the storage backend, no progress ticks."""

    def __init__(self, storage: LocalStorageBackend | None = None):
        self.storage = storage or LocalStorageBackend()

    def upload(
        self,
        incoming: IncomingFile,
        shipment_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> UploadResult:
        try:
            stored = self.storage.save(
                shipment_id=shipment_id,
                file_name=incoming.filename,
                content=incoming.content,
                content_type=incoming.content_type,
            )
        except (OSError, ValueError) as exc:
            raise UploadError(message=f"Direct storage upload failed: {exc}") from exc
        return UploadResult(
            storage_path=stored.storage_path,
            download_url=stored.download_url,
            file_name=stored.file_name,
        )


class FallbackUploadTransport:
    """
    Try primary, then secondary; tolerate total failure.

    The archived copy of the spreadsheet is best-effort: when both paths fail
    an empty UploadResult is returned and ingestion continues without a file link.
    """

    def __init__(self, primary: UploadTransport, secondary: UploadTransport):
        self.primary = primary
        self.secondary = secondary

    def upload(
        self,
        incoming: IncomingFile,
        shipment_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> UploadResult:
        try:
            result = self.primary.upload(incoming, shipment_id, on_progress)
            logger.info(
                "production_upload_primary_ok shipment=%s path=%s",
                shipment_id,
                result.storage_path,
                extra={"flow": UPLOAD},
            )
            return result
        except Exception as exc:
            logger.error(
                "production_upload_primary_failed shipment=%s error=%s; falling back to direct upload",
                shipment_id,
                exc,
            )

        try:
            result = self.secondary.upload(incoming, shipment_id, None)
        except Exception as exc:
            logger.warning(
                "production_upload_fallback_failed shipment=%s error=%s; continuing without file link",
                shipment_id,
                exc,
            )
            return UploadResult()

        if on_progress is not None:
            on_progress(100)
        logger.info(
            "production_upload_fallback_ok shipment=%s path=%s",
            shipment_id,
            result.storage_path,
            extra={"flow": UPLOAD},
        )
        return result


def default_upload_transport(
    base_url: str | None = None,
    *,
    session: Any | None = None,
    storage: LocalStorageBackend | None = None,
    headers: dict[str, str] | None = None,
) -> FallbackUploadTransport:
    return FallbackUploadTransport(
        primary=ServerUploadTransport(base_url, session=session, headers=headers),
        secondary=DirectStorageTransport(storage),
    )
