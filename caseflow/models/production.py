from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from caseflow.db.base import Base


class Shipment(Base):
    """
    Minimal shipment projection owned by the ingestion backend.
    `production_uploaded` is the shipment lock: set atomically with case insertion.
    """
    __tablename__ = "shipment"

    id: Mapped[str] = mapped_column(String(120), primary_key=True)
    production_uploaded: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    cases: Mapped[list["ProductionCase"]] = relationship(
        "ProductionCase", back_populates="shipment", cascade="all, delete-orphan"
    )
    meta: Mapped["ProductionMeta | None"] = relationship(
        "ProductionMeta", back_populates="shipment", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Shipment(id={self.id}, production_uploaded={self.production_uploaded})>"


class ProductionCase(Base):
    __tablename__ = "production_case"
    __table_args__ = (
        UniqueConstraint("shipment_id", "case_number", name="uq_production_case_shipment_case"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shipment_id: Mapped[str] = mapped_column(
        ForeignKey("shipment.id", ondelete="CASCADE"), nullable=False, index=True
    )
    case_number: Mapped[str] = mapped_column(String(120), nullable=False)
    critical_parts: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total_lines: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    domestic_lines: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    bulk_lines: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    # Lines already picked against this case by downstream productivity flows.
    consumed_lines: Mapped[float] = mapped_column(Float, nullable=False, default=0, server_default="0")
    source_row: Mapped[int | None] = mapped_column(Integer, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    uploaded_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system@local")

    shipment: Mapped["Shipment"] = relationship("Shipment", back_populates="cases")


class ProductionMeta(Base):
    """Last ingestion per shipment: case list for wildcard deletes plus the archived file."""
    __tablename__ = "production_meta"

    shipment_id: Mapped[str] = mapped_column(
        ForeignKey("shipment.id", ondelete="CASCADE"), primary_key=True
    )
    case_numbers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    storage_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    uploaded_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system@local")

    shipment: Mapped["Shipment"] = relationship("Shipment", back_populates="meta")


class FileUpload(Base):
    """Audit trail of process-cases requests."""
    __tablename__ = "file_upload"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    shipment_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
