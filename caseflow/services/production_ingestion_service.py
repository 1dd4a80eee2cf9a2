from __future__ import annotations

import threading
from dataclasses import dataclass

from caseflow.core.flow_filter import SUBMISSION, flow_logger
from caseflow.schemas.production import (
    COLUMN_MAP,
    WILDCARD,
    DeletionPayload,
    DeletionResult,
    LastUpload,
    ShipmentRef,
    SubmissionPayload,
    SubmissionResult,
    UploadMeta,
)
from caseflow.services.production_api_client import ProductionApiClient
from caseflow.services.production_errors import (
    FileRejectedError,
    HeaderMismatchError,
    IngestionFailure,
    NothingToDeleteError,
    SubmissionInProgressError,
)
from caseflow.services.production_workbook_service import (
    EXPECTED_HEADER_DESCRIPTION,
    HEADER_ROW_INDEX,
    IncomingFile,
    ParsedBatch,
    accept_file,
    match_header,
    parse_grid,
    validate_rows,
)
from caseflow.services.shipment_lock import ensure_unlocked
from caseflow.services.upload_transport import ProgressCallback, UploadResult, UploadTransport

logger = flow_logger(__name__)


def build_compensating_delete(last_upload: LastUpload) -> DeletionPayload:
    """Delete exactly what the given ingestion wrote: its shipments x its case numbers."""
    return DeletionPayload(
        shipments={
            shipment_id: list(last_upload.case_numbers)
            for shipment_id in last_upload.shipment_ids
        }
    )


def build_shipment_wipe(shipment_id: str) -> DeletionPayload:
    return DeletionPayload(shipments={shipment_id: [WILDCARD]})


class DeletionCompensator:
    """Holds the single most recent successful ingestion for a compensating delete."""

    def __init__(self) -> None:
        self._snapshot: LastUpload | None = None

    @property
    def snapshot(self) -> LastUpload | None:
        return self._snapshot

    def record(self, last_upload: LastUpload) -> None:
        self._snapshot = last_upload

    def clear(self) -> None:
        self._snapshot = None

    def compensate(self, client: ProductionApiClient) -> DeletionResult:
        snapshot = self._snapshot
        if snapshot is None or not snapshot.shipment_ids or not snapshot.case_numbers:
            raise NothingToDeleteError()
        result = client.delete(build_compensating_delete(snapshot))
        # Only a confirmed delete retires the snapshot.
        self._snapshot = None
        return result


@dataclass
class IngestionOutcome:
    result: SubmissionResult
    last_upload: LastUpload
    meta: UploadMeta
    upload: UploadResult


def build_upload_meta(
    batch: ParsedBatch,
    upload: UploadResult,
    shipment_ids: list[str],
) -> UploadMeta:
    return UploadMeta(
        file_name=batch.file_name or upload.file_name or "unknown",
        file_url=upload.download_url,
        storage_path=upload.storage_path,
        sheet_name=batch.sheet_name,
        header_row_index=batch.header_row_index,
        column_map=dict(COLUMN_MAP),
        row_count=len(batch.records),
        shipment_ids=list(shipment_ids),
    )


def build_submission_payload(
    batch: ParsedBatch,
    meta: UploadMeta,
    shipment_ids: list[str],
) -> SubmissionPayload:
    # Fan-out: every selected shipment receives the full record set.
    return SubmissionPayload(
        shipments={shipment_id: list(batch.records) for shipment_id in shipment_ids},
        meta=meta,
    )


def prepare_batch(incoming: IncomingFile) -> ParsedBatch:
    """Accept, parse, header-check and validate one file. No network."""
    reasons = accept_file(incoming)
    if reasons:
        raise FileRejectedError(message="; ".join(reasons), reasons=reasons)

    grid = parse_grid(incoming)
    header_row = grid.rows[HEADER_ROW_INDEX] if grid.rows else []
    if not match_header(header_row):
        raise HeaderMismatchError(
            message=f"Invalid file format. {EXPECTED_HEADER_DESCRIPTION}",
            expected=EXPECTED_HEADER_DESCRIPTION,
        )

    batch = validate_rows(grid, HEADER_ROW_INDEX, file_name=incoming.filename)
    logger.info(
        "production_file_parsed file=%s valid=%d errors=%d",
        incoming.filename,
        len(batch.records),
        len(batch.errors),
    )
    return batch


class ProductionIngestionService:
    """
    One operator's ingestion session: parse -> validate -> upload -> submit,
    plus the compensating delete of the most recent submission.
    """

    def __init__(
        self,
        client: ProductionApiClient,
        transport: UploadTransport,
        compensator: DeletionCompensator | None = None,
    ):
        self.client = client
        self.transport = transport
        self.compensator = compensator or DeletionCompensator()
        self._in_flight = threading.Lock()

    @property
    def submitting(self) -> bool:
        return self._in_flight.locked()

    @property
    def last_upload(self) -> LastUpload | None:
        return self.compensator.snapshot

    def prepare(self, incoming: IncomingFile) -> ParsedBatch:
        return prepare_batch(incoming)

    def confirm(
        self,
        batch: ParsedBatch,
        incoming: IncomingFile,
        selection: list[ShipmentRef],
        on_progress: ProgressCallback | None = None,
    ) -> IngestionOutcome:
        if not selection:
            raise IngestionFailure(
                code="NO_SHIPMENTS_SELECTED",
                message="Select at least one shipment",
            )
        if not batch.records:
            raise IngestionFailure(
                code="NO_RECORDS",
                message="No records to process. Upload a valid file first",
            )
        ensure_unlocked(selection)

        if not self._in_flight.acquire(blocking=False):
            raise SubmissionInProgressError()
        try:
            shipment_ids = [ref.shipment_id for ref in selection]
            # The original file is archived once, under the first shipment.
            upload = self.transport.upload(incoming, shipment_ids[0], on_progress)
            if not upload.archived:
                logger.warning(
                    "production_upload_skipped file=%s shipment=%s",
                    incoming.filename,
                    shipment_ids[0],
                )
            meta = build_upload_meta(batch, upload, shipment_ids)
            payload = build_submission_payload(batch, meta, shipment_ids)
            result = self.client.submit(payload)
        finally:
            self._in_flight.release()

        last_upload = LastUpload(shipment_ids=shipment_ids, case_numbers=batch.case_numbers)
        self.compensator.record(last_upload)
        logger.info(
            "production_ingestion_completed shipments=%s total_items=%s",
            ",".join(shipment_ids),
            result.total_items,
            extra={"flow": SUBMISSION},
        )
        return IngestionOutcome(result=result, last_upload=last_upload, meta=meta, upload=upload)

    def delete_last_upload(self) -> DeletionResult:
        return self.compensator.compensate(self.client)

    def wipe_shipment(self, shipment_id: str) -> DeletionResult:
        return self.client.delete(build_shipment_wipe(shipment_id))
