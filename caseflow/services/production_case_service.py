from __future__ import annotations

import logging
import math
import re
import time
from datetime import datetime

from sqlalchemy.orm import Session

from caseflow.core.config import settings
from caseflow.models.production import FileUpload, ProductionCase, ProductionMeta, Shipment
from caseflow.schemas.production import (
    WILDCARD,
    CaseBalance,
    CaseDetail,
    CaseDetailResponse,
    DeletionResult,
    OpenCasesResponse,
    ProcessCaseItem,
    ProcessCasesRequest,
    ShipmentRef,
    SubmissionResult,
)
from caseflow.services.production_errors import IngestionFailure, ShipmentLockedError
from caseflow.services.storage_backend import LocalStorageBackend

logger = logging.getLogger(__name__)


def sanitize_identifier(value) -> str:
    return re.sub(r"[^-A-Za-z0-9_/\\]", "", str(value if value is not None else "").strip())


def _valid_count(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and value >= 0


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(value for value in values if value))


class ProductionCaseService:
    """Backend side of the processing endpoint: case persistence and the shipment lock."""

    def __init__(self, db: Session, storage: LocalStorageBackend | None = None):
        self.db = db
        self.storage = storage or LocalStorageBackend()

    @staticmethod
    def _now() -> datetime:
        return datetime.utcnow()

    def _shipment_for_update(self, shipment_id: str, *, create: bool) -> Shipment | None:
        shipment = (
            self.db.query(Shipment)
            .filter(Shipment.id == shipment_id)
            .with_for_update()
            .first()
        )
        if shipment is None and create:
            shipment = Shipment(id=shipment_id, production_uploaded=False)
            self.db.add(shipment)
            self.db.flush()
        return shipment

    def _existing_cases(self, shipment_id: str) -> dict[str, ProductionCase]:
        rows = self.db.query(ProductionCase).filter(ProductionCase.shipment_id == shipment_id).all()
        return {row.case_number: row for row in rows}

    def _upsert_case(
        self,
        shipment_id: str,
        item: ProcessCaseItem,
        existing: dict[str, ProductionCase],
        *,
        uploaded_by: str,
        now: datetime,
    ) -> str | None:
        case_number = sanitize_identifier(item.case_number)
        counts = (item.critical_parts, item.total_lines, item.domestic_lines, item.bulk_lines)
        if not case_number or not all(_valid_count(value) for value in counts):
            return None

        row = existing.get(case_number)
        if row is None:
            row = ProductionCase(shipment_id=shipment_id, case_number=case_number)
            self.db.add(row)
            existing[case_number] = row
        row.critical_parts = float(item.critical_parts)
        row.total_lines = float(item.total_lines)
        row.domestic_lines = float(item.domestic_lines)
        row.bulk_lines = float(item.bulk_lines)
        row.source_row = item.source_row
        row.uploaded_at = now
        row.uploaded_by = uploaded_by
        return case_number

    def _write_meta(
        self,
        shipment: Shipment,
        case_numbers: list[str],
        meta: dict,
        *,
        uploaded_by: str,
        now: datetime,
    ) -> None:
        row = self.db.get(ProductionMeta, shipment.id)
        if row is None:
            row = ProductionMeta(shipment_id=shipment.id)
            self.db.add(row)
        row.case_numbers = case_numbers
        row.count = len(case_numbers)
        row.file_name = meta.get("fileName") or None
        row.file_url = meta.get("fileUrl") or None
        row.storage_path = meta.get("storagePath") or None
        row.uploaded_at = now
        row.uploaded_by = uploaded_by

    def _record_failure(self, error: Exception, *, uploaded_by: str) -> None:
        self.db.add(
            FileUpload(
                status="failed",
                started_at=self._now(),
                user_email=uploaded_by,
                error=str(error) or error.__class__.__name__,
            )
        )
        self.db.commit()

    def process_cases(self, request: ProcessCasesRequest, *, uploaded_by: str) -> SubmissionResult:
        targets = {
            sanitize_identifier(raw_id): items
            for raw_id, items in (request.shipments or {}).items()
        }
        targets.pop("", None)
        if not targets:
            raise IngestionFailure(code="INVALID_PAYLOAD", message="No shipments in payload")

        started_at = self._now()
        started_clock = time.monotonic()
        max_seconds = float(settings.PRODUCTION_MAX_PROCESSING_SECONDS)

        audit = FileUpload(
            status="started",
            started_at=started_at,
            user_email=uploaded_by,
            meta=request.meta,
            shipment_ids=list(targets),
        )
        try:
            self.db.add(audit)
            per_shipment: dict[str, int] = {}
            timed_out = False
            for shipment_id, items in targets.items():
                shipment = self._shipment_for_update(shipment_id, create=True)
                if shipment.production_uploaded:
                    raise ShipmentLockedError(shipment_ids=[shipment_id])

                existing = self._existing_cases(shipment_id)
                written = [
                    self._upsert_case(
                        shipment_id,
                        item,
                        existing,
                        uploaded_by=uploaded_by,
                        now=started_at,
                    )
                    for item in items
                ]
                case_numbers = _dedupe([number for number in written if number])
                per_shipment[shipment_id] = sum(1 for number in written if number)

                # Flag and records land in the same transaction.
                shipment.production_uploaded = True
                shipment.updated_at = started_at
                self._write_meta(
                    shipment,
                    case_numbers,
                    request.meta,
                    uploaded_by=uploaded_by,
                    now=started_at,
                )
                if time.monotonic() - started_clock > max_seconds:
                    timed_out = True
                    break

            total_items = sum(per_shipment.values())
            finished_at = self._now()
            audit.status = "timeout" if timed_out else "completed"
            audit.finished_at = finished_at
            audit.duration_ms = int((time.monotonic() - started_clock) * 1000)
            audit.processed_count = total_items
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.error("production_process_failed user=%s error=%s", uploaded_by, exc)
            self._record_failure(exc, uploaded_by=uploaded_by)
            raise

        logger.info(
            "production_process_completed user=%s shipments=%s total_items=%s status=%s",
            uploaded_by,
            ",".join(per_shipment),
            total_items,
            audit.status,
        )
        return SubmissionResult(
            total_items=total_items,
            per_shipment_counts=per_shipment,
            status="timeout" if timed_out else "ok",
        )

    def _delete_archived_file(self, shipment_id: str, storage_path: str) -> None:
        # A fan-out ingestion archives one file for several shipments.
        still_referenced = (
            self.db.query(ProductionMeta.shipment_id)
            .filter(ProductionMeta.storage_path == storage_path)
            .first()
        )
        if still_referenced is not None:
            logger.info(
                "production_file_kept shipment=%s path=%s referenced_by=%s",
                shipment_id,
                storage_path,
                still_referenced.shipment_id,
            )
            return
        try:
            self.storage.delete(storage_path)
        except (OSError, ValueError) as exc:
            # Case rows are still removed when the archived file cannot be.
            logger.warning(
                "production_file_delete_failed shipment=%s path=%s error=%s",
                shipment_id,
                storage_path,
                exc,
            )

    def delete_cases(self, shipments: dict[str, list[str]]) -> DeletionResult:
        targets = {sanitize_identifier(raw_id): cases for raw_id, cases in (shipments or {}).items()}
        targets.pop("", None)
        if not targets:
            raise IngestionFailure(code="INVALID_PAYLOAD", message="No shipments in payload")

        total_deletes = 0
        released_files: dict[str, str] = {}
        try:
            for shipment_id, raw_cases in targets.items():
                if not isinstance(raw_cases, list) or not raw_cases:
                    continue
                shipment = self._shipment_for_update(shipment_id, create=False)
                if shipment is None:
                    continue
                meta = self.db.get(ProductionMeta, shipment_id)
                query = self.db.query(ProductionCase).filter(
                    ProductionCase.shipment_id == shipment_id
                )

                if [str(value).strip() for value in raw_cases] == [WILDCARD]:
                    if meta is not None and meta.storage_path:
                        released_files[meta.storage_path] = shipment_id
                else:
                    case_numbers = _dedupe([sanitize_identifier(value) for value in raw_cases])
                    if not case_numbers:
                        continue
                    query = query.filter(ProductionCase.case_number.in_(case_numbers))

                total_deletes += query.delete(synchronize_session=False)

                remaining = (
                    self.db.query(ProductionCase.case_number)
                    .filter(ProductionCase.shipment_id == shipment_id)
                    .all()
                )
                if not remaining:
                    shipment.production_uploaded = False
                    if meta is not None:
                        self.db.delete(meta)
                elif meta is not None:
                    left = {row.case_number for row in remaining}
                    meta.case_numbers = [number for number in meta.case_numbers or [] if number in left]
                    meta.count = len(meta.case_numbers)
                shipment.updated_at = self._now()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        for storage_path, shipment_id in released_files.items():
            self._delete_archived_file(shipment_id, storage_path)

        logger.info(
            "production_delete_completed shipments=%s total_deletes=%s",
            ",".join(targets),
            total_deletes,
        )
        return DeletionResult(total_deletes=total_deletes)

    def shipment_states(self, shipment_ids: list[str]) -> list[ShipmentRef]:
        ids = _dedupe([sanitize_identifier(value) for value in shipment_ids])
        if not ids:
            return []
        rows = {row.id: row for row in self.db.query(Shipment).filter(Shipment.id.in_(ids)).all()}
        return [
            ShipmentRef(
                shipment_id=shipment_id,
                production_uploaded=bool(rows[shipment_id].production_uploaded) if shipment_id in rows else False,
            )
            for shipment_id in ids
        ]

    def open_cases(self, shipment_id: str) -> OpenCasesResponse:
        shipment_id = sanitize_identifier(shipment_id)
        if not shipment_id:
            raise IngestionFailure(code="MISSING_PARAMS", message="Missing shipmentId")
        rows = (
            self.db.query(ProductionCase)
            .filter(ProductionCase.shipment_id == shipment_id)
            .order_by(ProductionCase.case_number)
            .all()
        )
        balances = []
        for row in rows:
            remaining = max(0.0, float(row.total_lines or 0) - float(row.consumed_lines or 0))
            if remaining > 0:
                balances.append(CaseBalance(case_number=row.case_number, remaining_lines=remaining))
        return OpenCasesResponse(
            case_numbers=[balance.case_number for balance in balances],
            balances=balances,
        )

    def case_detail(self, shipment_id: str, case_number: str) -> CaseDetailResponse:
        shipment_id = sanitize_identifier(shipment_id)
        case_number = sanitize_identifier(case_number)
        if not shipment_id or not case_number:
            raise IngestionFailure(code="MISSING_PARAMS", message="shipmentId and caseNumber are required")
        row = (
            self.db.query(ProductionCase)
            .filter(ProductionCase.shipment_id == shipment_id)
            .filter(ProductionCase.case_number == case_number)
            .first()
        )
        if row is None:
            raise IngestionFailure(code="NOT_FOUND", message="Case not found", status_code=404)
        total = float(row.total_lines or 0)
        consumed = float(row.consumed_lines or 0)
        return CaseDetailResponse(
            shipment_id=shipment_id,
            case_number=case_number,
            data=CaseDetail(
                case_number=row.case_number,
                critical_parts=float(row.critical_parts or 0),
                total_lines=total,
                domestic_lines=float(row.domestic_lines or 0),
                bulk_lines=float(row.bulk_lines or 0),
                consumed_lines=consumed,
                remaining_lines=max(0.0, total - consumed),
                source_row=row.source_row,
                uploaded_by=row.uploaded_by,
            ),
        )
