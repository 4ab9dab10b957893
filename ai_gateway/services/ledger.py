# =============================================================================
# Cost Ledger — Append-Only Spend Records & Budget Epochs
# =============================================================================
#
# Two stores behind Protocols, so BudgetTracker never knows where rows live:
#
#   CostLedgerStore  — insert_cost, sum_cost_since, list_costs
#   BudgetEventStore — insert_event, latest_event
#
# ARCHITECTURE:
#   SqlLedgerStore       — SQLAlchemy async (PostgreSQL/asyncpg in prod)
#   InMemoryLedgerStore  — process-local lists (local dev, tests)
#
# Both implement BOTH protocols; a single instance is normally passed as
# cost_store and event_store.
#
# IGNORED SESSIONS:
# Rows whose session is flagged `is_ignored` are excluded from spend and
# from transaction listings. Rows WITHOUT a session id always count.
# (`x NOT IN (...)` is NULL for x = NULL in SQL, which would silently drop
# session-less rows; the SQL filter handles NULL explicitly.)
# =============================================================================

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ai_gateway.db.engine import get_session_factory, session_scope
from ai_gateway.db.models import AgentSession, BudgetEvent, BudgetEventType, CostLog

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CostLogEntry:
    """One billed provider call. Immutable once written."""

    model: str
    input_tokens: int
    output_tokens: int
    cost_micros: int
    session_id: str | None = None
    document_id: str | None = None
    workflow_name: str | None = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def cost_usd(self) -> float:
        return self.cost_micros / 1_000_000


@dataclass(frozen=True)
class BudgetEventRecord:
    """A budget epoch boundary (only `reset` today)."""

    message: str
    event_type: str = BudgetEventType.RESET.value
    threshold: float = 0.0
    current_spend: float = 0.0
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class CostLedgerStore(Protocol):
    """Append-only cost rows."""

    async def insert_cost(self, entry: CostLogEntry) -> None:
        ...

    async def sum_cost_since(self, since: datetime | None) -> int:
        """Sum of micro-dollars strictly after `since` (all rows if None),
        excluding ignored sessions."""
        ...

    async def list_costs(self, limit: int = 50, offset: int = 0) -> list[CostLogEntry]:
        """Non-ignored rows, newest first."""
        ...


class BudgetEventStore(Protocol):
    """Budget epoch boundaries."""

    async def insert_event(self, event: BudgetEventRecord) -> None:
        ...

    async def latest_event(self, event_type: str) -> BudgetEventRecord | None:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: SQLAlchemy
# ---------------------------------------------------------------------------


class SqlLedgerStore:
    """
    Ledger backed by the ai_cost_logs / budget_events / sessions tables.

    Each operation runs in its own short transaction via session_scope().
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._session_factory = session_factory

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    @staticmethod
    def _not_ignored():
        ignored = select(AgentSession.id).where(AgentSession.is_ignored.is_(True))
        return or_(CostLog.session_id.is_(None), CostLog.session_id.not_in(ignored))

    async def insert_cost(self, entry: CostLogEntry) -> None:
        async with session_scope(self._factory()) as session:
            session.add(
                CostLog(
                    id=entry.id,
                    model=entry.model,
                    input_tokens=entry.input_tokens,
                    output_tokens=entry.output_tokens,
                    estimated_cost=entry.cost_micros,
                    session_id=entry.session_id,
                    document_id=entry.document_id,
                    workflow_name=entry.workflow_name,
                    timestamp=entry.timestamp,
                )
            )

    async def sum_cost_since(self, since: datetime | None) -> int:
        stmt = select(func.coalesce(func.sum(CostLog.estimated_cost), 0)).where(
            self._not_ignored()
        )
        if since is not None:
            stmt = stmt.where(CostLog.timestamp > since)
        async with session_scope(self._factory()) as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def list_costs(self, limit: int = 50, offset: int = 0) -> list[CostLogEntry]:
        stmt = (
            select(CostLog)
            .where(self._not_ignored())
            .order_by(CostLog.timestamp.desc())
            .limit(limit)
            .offset(offset)
        )
        async with session_scope(self._factory()) as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [
            CostLogEntry(
                id=row.id,
                model=row.model,
                input_tokens=row.input_tokens,
                output_tokens=row.output_tokens,
                cost_micros=row.estimated_cost,
                session_id=row.session_id,
                document_id=row.document_id,
                workflow_name=row.workflow_name,
                timestamp=row.timestamp,
            )
            for row in rows
        ]

    async def insert_event(self, event: BudgetEventRecord) -> None:
        async with session_scope(self._factory()) as session:
            session.add(
                BudgetEvent(
                    id=event.id,
                    event_type=event.event_type,
                    message=event.message,
                    threshold=event.threshold,
                    current_spend=event.current_spend,
                    timestamp=event.timestamp,
                )
            )

    async def latest_event(self, event_type: str) -> BudgetEventRecord | None:
        stmt = (
            select(BudgetEvent)
            .where(BudgetEvent.event_type == event_type)
            .order_by(BudgetEvent.timestamp.desc())
            .limit(1)
        )
        async with session_scope(self._factory()) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return BudgetEventRecord(
            id=row.id,
            event_type=row.event_type,
            message=row.message or "",
            threshold=row.threshold,
            current_spend=row.current_spend,
            timestamp=row.timestamp,
        )


# ---------------------------------------------------------------------------
# Implementation 2: In-memory
# ---------------------------------------------------------------------------


class InMemoryLedgerStore:
    """Process-local ledger with a settable ignored-session set."""

    def __init__(self) -> None:
        self.costs: list[CostLogEntry] = []
        self.events: list[BudgetEventRecord] = []
        self.ignored_sessions: set[str] = set()

    def mark_session_ignored(self, session_id: str, ignored: bool = True) -> None:
        if ignored:
            self.ignored_sessions.add(session_id)
        else:
            self.ignored_sessions.discard(session_id)

    def _counted(self, entry: CostLogEntry) -> bool:
        return entry.session_id is None or entry.session_id not in self.ignored_sessions

    async def insert_cost(self, entry: CostLogEntry) -> None:
        self.costs.append(entry)

    async def sum_cost_since(self, since: datetime | None) -> int:
        return sum(
            e.cost_micros
            for e in self.costs
            if self._counted(e) and (since is None or e.timestamp > since)
        )

    async def list_costs(self, limit: int = 50, offset: int = 0) -> list[CostLogEntry]:
        visible = sorted(
            (e for e in self.costs if self._counted(e)),
            key=lambda e: e.timestamp,
            reverse=True,
        )
        return visible[offset:offset + limit]

    async def insert_event(self, event: BudgetEventRecord) -> None:
        self.events.append(event)

    async def latest_event(self, event_type: str) -> BudgetEventRecord | None:
        matching = [e for e in self.events if e.event_type == event_type]
        if not matching:
            return None
        return max(matching, key=lambda e: e.timestamp)