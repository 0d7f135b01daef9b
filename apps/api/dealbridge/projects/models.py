from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dealbridge.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectSequenceCounter(Base):
    __tablename__ = "project_sequence_counter"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    department_code: Mapped[str] = mapped_column(String(2), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    current_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("department_code", "year", name="uq_project_sequence_counter_department_year"),
        CheckConstraint("year >= 0 AND year <= 99", name="ck_project_sequence_counter_year"),
        CheckConstraint("current_number >= 0", name="ck_project_sequence_counter_current_number"),
    )


class DealProjectMapping(Base):
    __tablename__ = "deal_project_mapping"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_number: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    department: Mapped[str | None] = mapped_column(String(128), nullable=True)
    department_code: Mapped[str] = mapped_column(String(2), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    deals: Mapped[list[DealProjectMappingDeal]] = relationship(
        "DealProjectMappingDeal",
        back_populates="mapping",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    @property
    def deal_ids(self) -> list[int]:
        return sorted(link.deal_id for link in self.deals)


class DealProjectMappingDeal(Base):
    __tablename__ = "deal_project_mapping_deal"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mapping_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("deal_project_mapping.id", ondelete="CASCADE"),
        nullable=False,
    )
    deal_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    linked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    mapping: Mapped[DealProjectMapping] = relationship("DealProjectMapping", back_populates="deals")


Index("ix_deal_project_mapping_department_year", DealProjectMapping.department_code, DealProjectMapping.year)
Index("ix_deal_project_mapping_deal_mapping_id", DealProjectMappingDeal.mapping_id)
