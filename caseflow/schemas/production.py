from __future__ import annotations

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeFloat,
    NonNegativeInt,
)
from pydantic.alias_generators import to_camel

CASE_NUMBER_PATTERN = r"^[-A-Za-z0-9_/\\]+$"
WILDCARD = "*"

COLUMN_MAP: dict[str, str] = {
    "A": "Case No",
    "B": "No. of Critical Parts",
    "C": "Total Lines",
    "D": "EKC",
    "E": "EKM",
}


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class CaseRecord(WireModel):
    model_config = ConfigDict(frozen=True)

    case_number: str = Field(min_length=1, pattern=CASE_NUMBER_PATTERN)
    critical_parts: NonNegativeInt | NonNegativeFloat
    total_lines: NonNegativeInt | NonNegativeFloat
    domestic_lines: NonNegativeInt | NonNegativeFloat
    bulk_lines: NonNegativeInt | NonNegativeFloat
    source_row: int = Field(ge=1)


class RowError(WireModel):
    row: int
    messages: list[str]


class UploadMeta(WireModel):
    model_config = ConfigDict(frozen=True)

    file_name: str
    file_url: str | None = None
    storage_path: str | None = None
    sheet_name: str | None = None
    header_row_index: int = 0
    column_map: dict[str, str] = Field(default_factory=lambda: dict(COLUMN_MAP))
    row_count: int = 0
    shipment_ids: list[str] = Field(default_factory=list)


class ShipmentRef(WireModel):
    shipment_id: str
    production_uploaded: bool = False


class SubmissionPayload(WireModel):
    shipments: dict[str, list[CaseRecord]]
    meta: UploadMeta


class SubmissionResult(WireModel):
    total_items: int = 0
    per_shipment_counts: dict[str, int] = Field(default_factory=dict)
    status: str = "ok"


class DeletionPayload(WireModel):
    shipments: dict[str, list[str]]


class DeletionResult(WireModel):
    total_deletes: int = 0
    status: str = "ok"


class LastUpload(WireModel):
    model_config = ConfigDict(frozen=True)

    shipment_ids: list[str]
    case_numbers: list[str]


class UploadResponse(WireModel):
    storage_path: str | None = None
    download_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("downloadURL", "downloadUrl", "download_url"),
        serialization_alias="downloadURL",
    )
    file_name: str | None = None


# Backend request bodies are lenient on purpose: malformed records are skipped
# server-side rather than failing the whole batch.
class ProcessCaseItem(WireModel):
    case_number: str | None = None
    critical_parts: float | None = None
    total_lines: float | None = None
    domestic_lines: float | None = None
    bulk_lines: float | None = None
    source_row: int | None = Field(
        default=None,
        validation_alias=AliasChoices("sourceRow", "source_row", "row"),
    )


class ProcessCasesRequest(WireModel):
    shipments: dict[str, list[ProcessCaseItem]] = Field(default_factory=dict)
    meta: dict = Field(default_factory=dict)


class CaseBalance(WireModel):
    case_number: str
    remaining_lines: float


class OpenCasesResponse(WireModel):
    case_numbers: list[str]
    balances: list[CaseBalance]


class CaseDetail(WireModel):
    case_number: str
    critical_parts: float
    total_lines: float
    domestic_lines: float
    bulk_lines: float
    consumed_lines: float
    remaining_lines: float
    source_row: int | None = None
    uploaded_by: str | None = None


class CaseDetailResponse(WireModel):
    success: bool = True
    shipment_id: str
    case_number: str
    data: CaseDetail


class ParsePreviewResponse(WireModel):
    file_name: str
    sheet_name: str | None = None
    records: list[CaseRecord]
    errors: list[RowError]
    valid_count: int
    error_count: int
