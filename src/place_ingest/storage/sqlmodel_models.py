"""SQLModel ORM tables for places and batch checkpoints."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class Place(SQLModel, table=True):
    __tablename__ = "places"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_places_crawl_status_id", "crawl_status", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    name: str
    crawl_status: str = Field(default="PENDING", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BatchCheckpoint(SQLModel, table=True):
    __tablename__ = "batch_checkpoint"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "batch_name",
            "region_type",
            "region_code",
            name="uq_batch_checkpoint_scope_region",
        ),
        Index("idx_batch_checkpoint_status", "batch_name", "status"),
        Index("idx_batch_checkpoint_parent", "parent_code"),
    )

    id: int | None = Field(default=None, primary_key=True)
    batch_name: str = Field(max_length=100)
    region_type: str = Field(max_length=50)
    region_code: str = Field(max_length=20)
    region_name: str = Field(max_length=200)
    parent_code: str | None = Field(default=None, max_length=20)
    status: str = Field(default="PENDING", max_length=20)
    start_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    end_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    processed_count: int = 0
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BatchExecutionMetadata(SQLModel, table=True):
    __tablename__ = "batch_execution_metadata"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "batch_name",
            "execution_id",
            name="uq_batch_execution_metadata_batch_execution",
        ),
        Index(
            "uq_batch_execution_metadata_single_running",
            "batch_name",
            unique=True,
            sqlite_where=text("status = 'RUNNING'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    batch_name: str = Field(max_length=100, index=True)
    execution_id: str = Field(max_length=50)
    status: str = Field(default="RUNNING", max_length=20)
    start_time: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    end_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    total_regions: int = 0
    completed_regions: int = 0
    failed_regions: int = 0
    last_checkpoint_id: int | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("batch_checkpoint.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
