from __future__ import annotations

from io import BytesIO

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from caseflow.api.deps.request_identity import get_request_email
from caseflow.core.config import settings
from caseflow.db.session import get_db
from caseflow.schemas.production import (
    CaseDetailResponse,
    DeletionPayload,
    DeletionResult,
    OpenCasesResponse,
    ParsePreviewResponse,
    ProcessCasesRequest,
    ShipmentRef,
    SubmissionResult,
    UploadResponse,
)
from caseflow.services.production_case_service import ProductionCaseService, sanitize_identifier
from caseflow.services.production_errors import IngestionFailure
from caseflow.services.production_ingestion_service import prepare_batch
from caseflow.services.production_workbook_service import IncomingFile, build_template_workbook
from caseflow.services.storage_backend import LocalStorageBackend

router = APIRouter(prefix="/api/production", tags=["production"])

_XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _ensure_enabled() -> None:
    if not settings.PRODUCTION_INGESTION_ENABLED:
        raise HTTPException(status_code=404, detail="Production ingestion is disabled")


def _raise_failure(exc: IngestionFailure) -> None:
    raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc


def get_storage() -> LocalStorageBackend:
    return LocalStorageBackend()


@router.post("/upload", response_model=UploadResponse)
async def upload_production_file(
    file: UploadFile | None = File(None),
    shipment_id: str = Form("", alias="shipmentId"),
    storage: LocalStorageBackend = Depends(get_storage),
):
    _ensure_enabled()
    shipment_id = sanitize_identifier(shipment_id)
    if file is None or not shipment_id:
        raise HTTPException(status_code=400, detail={"code": "INVALID_FORM", "message": "file and shipmentId are required"})

    content = await file.read()
    if len(content) > int(settings.PRODUCTION_UPLOAD_MAX_BYTES):
        raise HTTPException(status_code=413, detail={"code": "FILE_TOO_LARGE", "message": "File size exceeds limit"})

    original_name = (file.filename or "").strip() or "upload.xlsx"
    try:
        stored = storage.save(
            shipment_id=shipment_id,
            file_name=original_name,
            content=content,
            content_type=file.content_type or "application/octet-stream",
        )
    except (OSError, ValueError) as exc:
        raise HTTPException(status_code=500, detail={"code": "UPLOAD_FAILED", "message": str(exc)}) from exc
    return UploadResponse(
        storage_path=stored.storage_path,
        download_url=stored.download_url,
        file_name=original_name,
    )


@router.post("/process-cases", response_model=SubmissionResult)
def process_cases(
    payload: ProcessCasesRequest,
    request: Request,
    db: Session = Depends(get_db),
    storage: LocalStorageBackend = Depends(get_storage),
):
    _ensure_enabled()
    service = ProductionCaseService(db, storage)
    try:
        return service.process_cases(payload, uploaded_by=get_request_email(request))
    except IngestionFailure as exc:
        _raise_failure(exc)


@router.delete("/process-cases", response_model=DeletionResult)
def delete_cases(
    payload: DeletionPayload,
    db: Session = Depends(get_db),
    storage: LocalStorageBackend = Depends(get_storage),
):
    _ensure_enabled()
    service = ProductionCaseService(db, storage)
    try:
        return service.delete_cases(payload.shipments)
    except IngestionFailure as exc:
        _raise_failure(exc)


@router.get("/cases", response_model=OpenCasesResponse)
def list_open_cases(
    shipment_id: str = Query("", alias="shipmentId"),
    db: Session = Depends(get_db),
):
    _ensure_enabled()
    try:
        return ProductionCaseService(db).open_cases(shipment_id)
    except IngestionFailure as exc:
        _raise_failure(exc)


@router.get("/case", response_model=CaseDetailResponse)
def get_case(
    shipment_id: str = Query("", alias="shipmentId"),
    case_number: str = Query("", alias="caseNumber"),
    db: Session = Depends(get_db),
):
    _ensure_enabled()
    try:
        return ProductionCaseService(db).case_detail(shipment_id, case_number)
    except IngestionFailure as exc:
        _raise_failure(exc)


@router.get("/shipments", response_model=list[ShipmentRef])
def get_shipment_states(
    ids: str = Query(""),
    db: Session = Depends(get_db),
):
    _ensure_enabled()
    return ProductionCaseService(db).shipment_states([part for part in ids.split(",") if part.strip()])


@router.get("/template.xlsx")
def download_template():
    _ensure_enabled()
    return StreamingResponse(
        BytesIO(build_template_workbook()),
        media_type=_XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="production-upload-template.xlsx"'},
    )


@router.post("/parse", response_model=ParsePreviewResponse)
async def parse_production_file(
    request: Request,
    filename: str = Query("upload.xlsx"),
):
    _ensure_enabled()
    incoming = IncomingFile(
        filename=(filename or "").strip(),
        content=await request.body(),
        content_type=request.headers.get("content-type") or "application/octet-stream",
    )
    try:
        batch = prepare_batch(incoming)
    except IngestionFailure as exc:
        _raise_failure(exc)
    errors = batch.row_errors()
    return ParsePreviewResponse(
        file_name=batch.file_name,
        sheet_name=batch.sheet_name,
        records=batch.records,
        errors=errors,
        valid_count=len(batch.records),
        error_count=len(errors),
    )
