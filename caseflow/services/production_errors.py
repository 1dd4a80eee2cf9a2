from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class IngestionFailure(Exception):
    code: str
    message: str
    status_code: int = 400

    def __str__(self) -> str:
        return self.message

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


# Structural: fatal to the current attempt, never retried.


@dataclass
class FileRejectedError(IngestionFailure):
    code: str = "INVALID_FILE"
    message: str = "Invalid file"
    reasons: list[str] = field(default_factory=list)

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["reasons"] = list(self.reasons)
        return detail


@dataclass
class EmptyFileError(IngestionFailure):
    code: str = "EMPTY_FILE"
    message: str = "Empty file"


@dataclass
class UnreadableFileError(IngestionFailure):
    code: str = "PARSE_ERROR"
    message: str = "Failed to parse file"


@dataclass
class HeaderMismatchError(IngestionFailure):
    code: str = "INVALID_FORMAT"
    message: str = "Invalid file format"
    expected: str = ""

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["expected"] = self.expected
        return detail


# Session and lock guards.


@dataclass
class ShipmentLockedError(IngestionFailure):
    code: str = "SHIPMENT_LOCKED"
    message: str = "Cases already uploaded for this shipment. Delete to re-upload."
    status_code: int = 409
    shipment_ids: list[str] = field(default_factory=list)

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["shipment_ids"] = list(self.shipment_ids)
        return detail


@dataclass
class SubmissionInProgressError(IngestionFailure):
    code: str = "SUBMISSION_IN_PROGRESS"
    message: str = "A submission is already in progress"
    status_code: int = 409


@dataclass
class NothingToDeleteError(IngestionFailure):
    code: str = "NOTHING_TO_DELETE"
    message: str = "No recent upload found"


# Transport.


@dataclass
class UploadError(IngestionFailure):
    code: str = "UPLOAD_FAILED"
    message: str = "Upload failed"
    status_code: int = 502


@dataclass
class SubmissionError(IngestionFailure):
    code: str = "SUBMISSION_FAILED"
    message: str = "Processing failed"
    status_code: int = 502
    upstream_status: int | None = None


@dataclass
class DeletionError(IngestionFailure):
    code: str = "DELETE_FAILED"
    message: str = "Delete failed"
    status_code: int = 502
    upstream_status: int | None = None
