# =============================================================================
# Database Models — Cost Ledger Schema
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────────────┐   ┌──────────────────────┐   ┌──────────────┐
# │  ai_cost_logs            │   │  budget_events       │   │  sessions    │
# ├──────────────────────────┤   ├──────────────────────┤   ├──────────────┤
# │ id (PK, uuid str)        │   │ id (PK, uuid str)    │   │ id (PK)      │
# │ model                    │   │ event_type ('reset') │   │ is_ignored   │
# │ input_tokens             │   │ message              │   └──────────────┘
# │ output_tokens            │   │ threshold            │
# │ estimated_cost (micros)  │   │ current_spend        │
# │ session_id  ─ ─ ─ ─ ─ ─ ─│─ ─│─ ─ ─ ─ ─ ─ ─ ─ ─ ─ ─▶│ (soft link)
# │ document_id              │   │ timestamp            │
# │ workflow_name            │   └──────────────────────┘
# │ timestamp                │
# └──────────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. Append-only ledger. Cost rows are never updated or deleted. A budget
#    reset is a new budget_events row; spend is summed from the latest
#    reset forward.
#
# 2. Cost stored as integer micro-dollars (`estimated_cost`). Integer sums
#    are exact; dollars are derived at read time.
#
# 3. session_id is a soft reference (no FK). Ledger writes must never fail
#    because a session row has not been written yet.
#
# 4. Timestamps are set in Python (UTC) rather than via server_default so
#    that "strictly after the reset" comparisons behave the same on every
#    backend, including SQLite in tests.
#
# 5. Portable column types only. No JSONB or vendor enums.
# =============================================================================

import enum
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for the ledger tables."""

    pass


class BudgetEventType(str, enum.Enum):
    """Kinds of budget event. Only resets exist today."""

    RESET = "reset"


class CostLog(Base):
    """One billed provider call."""

    __tablename__ = "ai_cost_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    model: Mapped[str] = mapped_column(String(200), nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Micro-dollars (1/1,000,000 USD), rounded up at write time
    estimated_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    session_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    document_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    workflow_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<CostLog(id={self.id}, model='{self.model}', "
            f"cost_micros={self.estimated_cost})>"
        )


class BudgetEvent(Base):
    """A budget epoch boundary."""

    __tablename__ = "budget_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    event_type: Mapped[str] = mapped_column(
        String(50), nullable=False, default=BudgetEventType.RESET.value,
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    current_spend: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )


class AgentSession(Base):
    """
    Caller sessions. Owned by the application embedding the gateway; the
    ledger only reads `is_ignored` to drop test/debug sessions from spend.
    """

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    is_ignored: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


# =============================================================================
# Indexes
# =============================================================================
# Spend queries scan by timestamp (since last reset) and filter by session;
# the reset lookup orders budget events by timestamp.
# =============================================================================

cost_log_timestamp_idx = Index("idx_ai_cost_logs_timestamp", CostLog.timestamp)
cost_log_session_idx = Index("idx_ai_cost_logs_session_id", CostLog.session_id)
budget_event_lookup_idx = Index(
    "idx_budget_events_type_timestamp",
    BudgetEvent.event_type,
    BudgetEvent.timestamp,
)
