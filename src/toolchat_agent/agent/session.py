"""
Session storage for conversations.

Two backends share the ``BaseSessionStore`` contract: an in-memory dict for
development and tests, and a SQLAlchemy-backed store for durable history.
Sessions idle for longer than ``session_timeout`` are treated as absent by
lookups and removed by a periodic sweep.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable
from uuid import uuid4

import structlog
from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..models import MessageRecord, SessionRecord, ToolUsage, init_database
from .history import (
    ConversationEntry,
    ConversationHistory,
    MessageRole,
    tool_call_from_dict,
    tool_call_to_dict,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionNotFoundError(LookupError):
    """Raised when an operation targets a session that does not exist."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


@dataclass
class Session:
    """A conversation session and its entries."""

    id: str
    messages: list[ConversationEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    owner: str | None = None

    def history(self) -> ConversationHistory:
        return ConversationHistory(self.messages)

    def visible_messages(self) -> list[ConversationEntry]:
        """Entries shown to clients: everything except system bookkeeping."""
        return [m for m in self.messages if m.role != MessageRole.SYSTEM.value]

    def to_dict(self, include_system: bool = True) -> dict[str, Any]:
        messages = self.messages if include_system else self.visible_messages()
        return {
            "id": self.id,
            "owner": self.owner,
            "messages": [m.to_dict() for m in messages],
            "messageCount": len(messages),
            "createdAt": self.created_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
        }


def _fingerprint(entry: ConversationEntry) -> tuple[str, str | None, str | None]:
    return (entry.role, entry.content, entry.tool_call_id)


def unseen_entries(
    existing: Iterable[ConversationEntry],
    incoming: Iterable[ConversationEntry],
) -> list[ConversationEntry]:
    """Select the incoming entries that are not stored yet.

    Entries are matched by id. An entry without an id is considered stored
    when an existing entry has the same role, content and tool_call_id.
    """
    existing = list(existing)
    seen_ids = {e.id for e in existing if e.id}
    fingerprints = {_fingerprint(e) for e in existing}

    fresh = []
    for entry in incoming:
        if entry.id:
            if entry.id in seen_ids:
                continue
            seen_ids.add(entry.id)
        elif _fingerprint(entry) in fingerprints:
            continue
        fresh.append(entry)
    return fresh


class BaseSessionStore(ABC):
    """Contract shared by all session store backends."""

    def __init__(
        self,
        session_timeout: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_timeout = session_timeout
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    def is_expired(self, last_activity: datetime, now: datetime | None = None) -> bool:
        now = now or self.now()
        return now - _as_utc(last_activity) > self.session_timeout

    @abstractmethod
    async def create_session(self, session_id: str | None = None, owner: str | None = None) -> Session:
        """Create a fresh, empty session, replacing any existing one with the same id."""
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None:
        """Get a session and mark it active. Expired sessions are absent."""
        pass

    @abstractmethod
    async def get_or_create_session(self, session_id: str | None = None, owner: str | None = None) -> Session:
        pass

    @abstractmethod
    async def add_message(self, session_id: str, entry: ConversationEntry) -> None:
        pass

    @abstractmethod
    async def update_session(self, session_id: str, entries: list[ConversationEntry]) -> None:
        """Replace all entries of a session in one step."""
        pass

    @abstractmethod
    async def merge_messages(self, session_id: str, entries: list[ConversationEntry]) -> int:
        """Append the entries not stored yet; returns how many were appended."""
        pass

    @abstractmethod
    async def clear_messages(self, session_id: str) -> bool:
        pass

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        pass

    @abstractmethod
    async def evict_stale(self, now: datetime | None = None) -> int:
        """Remove expired sessions; returns how many were removed."""
        pass

    @abstractmethod
    async def list_sessions(self) -> list[Session]:
        pass

    @abstractmethod
    async def record_tool_usage(
        self,
        session_id: str | None,
        tool_name: str,
        args: Any,
        result: str,
        success: bool,
        execution_time_ms: float,
    ) -> None:
        pass

    @abstractmethod
    async def get_tool_stats(self) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def get_session_tools(self, session_id: str) -> list[dict[str, Any]]:
        pass

    async def get_recent_messages(self, session_id: str, limit: int = 10) -> list[ConversationEntry]:
        session = await self.get_session(session_id)
        if session is None or limit <= 0:
            return []
        return session.messages[-limit:]

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Evict expired sessions every ``interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = await self.evict_stale()
            except Exception as e:
                logger.error("Session sweep failed", error=str(e))
                continue
            if removed:
                logger.info("Expired sessions evicted", count=removed)

    async def close(self) -> None:
        pass


def _stats_from_rows(rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    stats: dict[str, dict[str, Any]] = {}
    for row in rows:
        entry = stats.setdefault(row["tool_name"], {
            "tool_name": row["tool_name"],
            "usage_count": 0,
            "success_count": 0,
            "total_time": 0.0,
        })
        entry["usage_count"] += 1
        entry["success_count"] += 1 if row["success"] else 0
        entry["total_time"] += row["execution_time_ms"]

    result = []
    for entry in stats.values():
        total = entry.pop("total_time")
        entry["avg_execution_time"] = total / entry["usage_count"]
        result.append(entry)
    result.sort(key=lambda s: s["usage_count"], reverse=True)
    return result


class InMemorySessionStore(BaseSessionStore):
    """Session store kept in a dict. Contents are lost on restart."""

    def __init__(
        self,
        session_timeout: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(session_timeout, clock)
        self._sessions: dict[str, Session] = {}
        self._tool_usage: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()

    @staticmethod
    def _snapshot(session: Session) -> Session:
        return Session(
            id=session.id,
            messages=list(session.messages),
            created_at=session.created_at,
            last_activity=session.last_activity,
            owner=session.owner,
        )

    def _new_session(self, session_id: str | None, owner: str | None) -> Session:
        now = self.now()
        session = Session(
            id=session_id or str(uuid4()),
            created_at=now,
            last_activity=now,
            owner=owner,
        )
        self._sessions[session.id] = session
        logger.info("Created new session", session_id=session.id)
        return session

    def _live(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self.is_expired(session.last_activity):
            del self._sessions[session_id]
            logger.info("Session expired", session_id=session_id)
            return None
        return session

    def _require(self, session_id: str) -> Session:
        session = self._live(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def create_session(self, session_id: str | None = None, owner: str | None = None) -> Session:
        async with self._lock:
            return self._snapshot(self._new_session(session_id, owner))

    async def get_session(self, session_id: str) -> Session | None:
        async with self._lock:
            session = self._live(session_id)
            if session is None:
                return None
            session.last_activity = self.now()
            return self._snapshot(session)

    async def get_or_create_session(self, session_id: str | None = None, owner: str | None = None) -> Session:
        async with self._lock:
            session = self._live(session_id) if session_id else None
            if session is None:
                session = self._new_session(session_id, owner)
            else:
                session.last_activity = self.now()
            return self._snapshot(session)

    async def add_message(self, session_id: str, entry: ConversationEntry) -> None:
        async with self._lock:
            session = self._require(session_id)
            session.messages.append(entry)
            session.last_activity = self.now()

    async def update_session(self, session_id: str, entries: list[ConversationEntry]) -> None:
        async with self._lock:
            session = self._require(session_id)
            session.messages = list(entries)
            session.last_activity = self.now()

    async def merge_messages(self, session_id: str, entries: list[ConversationEntry]) -> int:
        async with self._lock:
            session = self._require(session_id)
            fresh = unseen_entries(session.messages, entries)
            session.messages.extend(fresh)
            session.last_activity = self.now()
            return len(fresh)

    async def clear_messages(self, session_id: str) -> bool:
        async with self._lock:
            session = self._live(session_id)
            if session is None:
                return False
            session.messages = []
            session.last_activity = self.now()
            logger.info("Session cleared", session_id=session_id)
            return True

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
            if removed:
                logger.info("Session deleted", session_id=session_id)
            return removed

    async def evict_stale(self, now: datetime | None = None) -> int:
        async with self._lock:
            now = now or self.now()
            expired = [
                sid for sid, s in self._sessions.items()
                if self.is_expired(s.last_activity, now)
            ]
            for sid in expired:
                del self._sessions[sid]
            return len(expired)

    async def list_sessions(self) -> list[Session]:
        async with self._lock:
            return [self._snapshot(s) for s in self._sessions.values()]

    async def record_tool_usage(
        self,
        session_id: str | None,
        tool_name: str,
        args: Any,
        result: str,
        success: bool,
        execution_time_ms: float,
    ) -> None:
        async with self._lock:
            self._tool_usage.append({
                "session_id": session_id,
                "tool_name": tool_name,
                "args": args,
                "result": result,
                "success": success,
                "execution_time_ms": execution_time_ms,
                "created_at": self.now().isoformat(),
            })

    async def get_tool_stats(self) -> list[dict[str, Any]]:
        async with self._lock:
            return _stats_from_rows(self._tool_usage)

    async def get_session_tools(self, session_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            rows = [dict(r) for r in self._tool_usage if r["session_id"] == session_id]
        rows.reverse()
        return rows


def _entry_to_record(session_id: str, entry: ConversationEntry) -> MessageRecord:
    return MessageRecord(
        entry_id=entry.id,
        session_id=session_id,
        role=entry.role,
        content=entry.content,
        tool_calls=[tool_call_to_dict(tc) for tc in entry.tool_calls] if entry.tool_calls else None,
        tool_call_id=entry.tool_call_id,
        timestamp=entry.timestamp,
    )


def _record_to_entry(record: MessageRecord) -> ConversationEntry:
    return ConversationEntry(
        role=record.role,
        content=record.content,
        tool_calls=[tool_call_from_dict(tc) for tc in record.tool_calls] if record.tool_calls else None,
        tool_call_id=record.tool_call_id,
        timestamp=_as_utc(record.timestamp),
        id=record.entry_id,
    )


class SQLSessionStore(BaseSessionStore):
    """Session store persisted through SQLAlchemy. One transaction per operation."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        session_timeout: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(session_timeout, clock)
        self._session_factory = session_factory

    @classmethod
    async def from_url(cls, database_url: str, **kwargs: Any) -> "SQLSessionStore":
        session_factory = await init_database(database_url)
        return cls(session_factory, **kwargs)

    async def close(self) -> None:
        engine = self._session_factory.kw.get("bind")
        if engine is not None:
            await engine.dispose()

    async def _messages(self, db: AsyncSession, session_id: str) -> list[ConversationEntry]:
        result = await db.execute(
            select(MessageRecord)
            .where(MessageRecord.session_id == session_id)
            .order_by(MessageRecord.seq)
        )
        return [_record_to_entry(r) for r in result.scalars().all()]

    async def _session(self, db: AsyncSession, record: SessionRecord) -> Session:
        return Session(
            id=record.id,
            messages=await self._messages(db, record.id),
            created_at=_as_utc(record.created_at),
            last_activity=_as_utc(record.last_activity),
            owner=record.owner,
        )

    async def _remove(self, db: AsyncSession, session_id: str) -> None:
        await db.execute(delete(MessageRecord).where(MessageRecord.session_id == session_id))
        record = await db.get(SessionRecord, session_id)
        if record is not None:
            await db.delete(record)
            await db.flush()

    async def _live(self, db: AsyncSession, session_id: str) -> SessionRecord | None:
        record = await db.get(SessionRecord, session_id)
        if record is None:
            return None
        if self.is_expired(record.last_activity):
            await self._remove(db, session_id)
            logger.info("Session expired", session_id=session_id)
            return None
        return record

    async def _require(self, db: AsyncSession, session_id: str) -> SessionRecord:
        record = await self._live(db, session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    async def _create(self, db: AsyncSession, session_id: str | None, owner: str | None) -> SessionRecord:
        session_id = session_id or str(uuid4())
        await self._remove(db, session_id)
        now = self.now()
        record = SessionRecord(
            id=session_id,
            owner=owner,
            created_at=now,
            last_activity=now,
        )
        db.add(record)
        await db.flush()
        logger.info("Created new session", session_id=session_id)
        return record

    async def create_session(self, session_id: str | None = None, owner: str | None = None) -> Session:
        async with self._session_factory() as db:
            record = await self._create(db, session_id, owner)
            session = await self._session(db, record)
            await db.commit()
            return session

    async def get_session(self, session_id: str) -> Session | None:
        async with self._session_factory() as db:
            record = await self._live(db, session_id)
            if record is not None:
                record.last_activity = self.now()
                session = await self._session(db, record)
            else:
                session = None
            await db.commit()
            return session

    async def get_or_create_session(self, session_id: str | None = None, owner: str | None = None) -> Session:
        async with self._session_factory() as db:
            record = await self._live(db, session_id) if session_id else None
            if record is None:
                record = await self._create(db, session_id, owner)
            else:
                record.last_activity = self.now()
            session = await self._session(db, record)
            await db.commit()
            return session

    async def add_message(self, session_id: str, entry: ConversationEntry) -> None:
        async with self._session_factory() as db:
            record = await self._require(db, session_id)
            db.add(_entry_to_record(session_id, entry))
            record.last_activity = self.now()
            await db.commit()

    async def update_session(self, session_id: str, entries: list[ConversationEntry]) -> None:
        async with self._session_factory() as db:
            record = await self._require(db, session_id)
            await db.execute(delete(MessageRecord).where(MessageRecord.session_id == session_id))
            db.add_all([_entry_to_record(session_id, e) for e in entries])
            record.last_activity = self.now()
            await db.commit()

    async def merge_messages(self, session_id: str, entries: list[ConversationEntry]) -> int:
        async with self._session_factory() as db:
            record = await self._require(db, session_id)
            fresh = unseen_entries(await self._messages(db, session_id), entries)
            db.add_all([_entry_to_record(session_id, e) for e in fresh])
            record.last_activity = self.now()
            await db.commit()
            return len(fresh)

    async def clear_messages(self, session_id: str) -> bool:
        async with self._session_factory() as db:
            record = await self._live(db, session_id)
            if record is None:
                await db.commit()
                return False
            await db.execute(delete(MessageRecord).where(MessageRecord.session_id == session_id))
            record.last_activity = self.now()
            await db.commit()
            logger.info("Session cleared", session_id=session_id)
            return True

    async def delete_session(self, session_id: str) -> bool:
        async with self._session_factory() as db:
            exists = await db.get(SessionRecord, session_id) is not None
            if exists:
                await self._remove(db, session_id)
                await db.commit()
                logger.info("Session deleted", session_id=session_id)
            return exists

    async def evict_stale(self, now: datetime | None = None) -> int:
        now = now or self.now()
        async with self._session_factory() as db:
            result = await db.execute(select(SessionRecord.id, SessionRecord.last_activity))
            expired = [sid for sid, last in result.all() if self.is_expired(last, now)]
            for sid in expired:
                await self._remove(db, sid)
            await db.commit()
            return len(expired)

    async def list_sessions(self) -> list[Session]:
        async with self._session_factory() as db:
            result = await db.execute(select(SessionRecord).order_by(SessionRecord.created_at))
            return [await self._session(db, r) for r in result.scalars().all()]

    async def record_tool_usage(
        self,
        session_id: str | None,
        tool_name: str,
        args: Any,
        result: str,
        success: bool,
        execution_time_ms: float,
    ) -> None:
        async with self._session_factory() as db:
            db.add(ToolUsage(
                session_id=session_id,
                tool_name=tool_name,
                args=args,
                result=result,
                success=success,
                execution_time_ms=execution_time_ms,
                created_at=self.now(),
            ))
            await db.commit()

    async def get_tool_stats(self) -> list[dict[str, Any]]:
        usage_count = func.count(ToolUsage.id)
        async with self._session_factory() as db:
            result = await db.execute(
                select(
                    ToolUsage.tool_name,
                    usage_count,
                    func.sum(case((ToolUsage.success.is_(True), 1), else_=0)),
                    func.avg(ToolUsage.execution_time_ms),
                )
                .group_by(ToolUsage.tool_name)
                .order_by(usage_count.desc())
            )
            return [
                {
                    "tool_name": name,
                    "usage_count": count,
                    "success_count": int(successes or 0),
                    "avg_execution_time": float(avg or 0.0),
                }
                for name, count, successes, avg in result.all()
            ]

    async def get_session_tools(self, session_id: str) -> list[dict[str, Any]]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ToolUsage)
                .where(ToolUsage.session_id == session_id)
                .order_by(ToolUsage.id.desc())
            )
            return [
                {
                    "session_id": u.session_id,
                    "tool_name": u.tool_name,
                    "args": u.args,
                    "result": u.result,
                    "success": u.success,
                    "execution_time_ms": u.execution_time_ms,
                    "created_at": _as_utc(u.created_at).isoformat(),
                }
                for u in result.scalars().all()
            ]


async def create_session_store(settings: Settings) -> BaseSessionStore:
    """Build the session store selected by ``settings.session_backend``."""
    timeout = timedelta(hours=settings.session_timeout_hours)

    if settings.session_backend == "sql":
        store: BaseSessionStore = await SQLSessionStore.from_url(
            settings.database_url, session_timeout=timeout
        )
    else:
        store = InMemorySessionStore(session_timeout=timeout)

    logger.info("Session store ready", backend=settings.session_backend)
    return store
