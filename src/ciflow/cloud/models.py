from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_kind: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    target_branch: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    pr_number: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    sha: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    group_key: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True, index=True)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    cancel_reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    jobs: Mapped[List["JobRow"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="JobRow.id"
    )


class JobRow(Base):
    __tablename__ = "jobs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(32), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    outcome: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    binding: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    steps: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    log: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    run: Mapped[RunRow] = relationship(back_populates="jobs")
