"""
Turn execution shared by the transports.

Each turn runs in its own task and hands events to the client through a
queue. A client that goes away only stops reading; the turn still finishes
and its history is persisted. Turns on the same session run one at a time.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator
from uuid import uuid4

import structlog

from ..agent import (
    Agent,
    AgentStreamEvent,
    BaseSessionStore,
    ClientMetadata,
    ConversationEntry,
    ConversationHistory,
    SessionNotFoundError,
    ToolCallEvent,
    ToolProgressUpdate,
    ToolResultEvent,
)
from ..agent.history import (
    tool_call_annotation,
    tool_progress_annotation,
    tool_result_annotation,
)

logger = structlog.get_logger()

_END = object()


@dataclass
class TurnReply:
    """Outcome of an all-at-once turn."""

    session_id: str
    content: str
    history_length: int


class Turn:
    """A streaming turn in flight.

    Iterate it for ``AgentStreamEvent`` items. When iteration ends,
    ``history_length`` holds the stored history size; an unexpected failure
    inside the turn is re-raised at the end of iteration.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.history_length = 0
        self.error: Exception | None = None
        self.task: asyncio.Task | None = None
        self._queue: asyncio.Queue = asyncio.Queue()

    def __aiter__(self) -> AsyncIterator[AgentStreamEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[AgentStreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                break
            yield item
        if self.error is not None:
            raise self.error

    def push(self, event: AgentStreamEvent) -> None:
        self._queue.put_nowait(event)

    def finish(self) -> None:
        self._queue.put_nowait(_END)

    async def wait(self) -> None:
        """Wait for the turn to finish, whether or not anyone is reading."""
        if self.task is not None:
            await asyncio.shield(self.task)


class TurnRunner:
    """Runs orchestrator turns against stored sessions."""

    def __init__(self, agent: Agent, store: BaseSessionStore, record_annotations: bool = True):
        self.agent = agent
        self.store = store
        self.record_annotations = record_annotations
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()

    @asynccontextmanager
    async def _session_slot(self, session_id: str):
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._waiters[session_id] = self._waiters.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[session_id] -= 1
            if not self._waiters[session_id]:
                del self._waiters[session_id]
                self._locks.pop(session_id, None)

    def start_turn(
        self,
        session_id: str | None,
        message: str,
        enable_tools: bool = True,
        metadata: ClientMetadata | None = None,
    ) -> Turn:
        """Start a streaming turn in the background and return its handle."""
        turn = Turn(session_id or str(uuid4()))
        task = asyncio.create_task(self._run(turn, message, enable_tools, metadata))
        turn.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return turn

    async def run_turn(
        self,
        session_id: str | None,
        message: str,
        enable_tools: bool = True,
        metadata: ClientMetadata | None = None,
    ) -> TurnReply:
        """Run an all-at-once turn and return the final answer."""
        session_id = session_id or str(uuid4())

        async with self._session_slot(session_id):
            session = await self.store.get_or_create_session(session_id)
            history = session.history()
            content = await self.agent.process_message(
                message, history, enable_tools=enable_tools, metadata=metadata
            )
            history_length = await self._reconcile(session_id, history)

        return TurnReply(session_id=session_id, content=content, history_length=history_length)

    async def _run(
        self,
        turn: Turn,
        message: str,
        enable_tools: bool,
        metadata: ClientMetadata | None,
    ) -> None:
        session_id = turn.session_id
        history: ConversationHistory | None = None

        async with self._session_slot(session_id):
            try:
                session = await self.store.get_or_create_session(session_id)
                history = session.history()
                persisted = len(history)
                call_args: Any = None

                logger.info("Turn started", session_id=session_id, enable_tools=enable_tools)

                async for event in self.agent.stream_message(
                    message, history, enable_tools=enable_tools, metadata=metadata
                ):
                    turn.push(event)

                    if isinstance(event, ToolCallEvent):
                        call_args = event.args
                        persisted = await self._flush(session_id, history, persisted)
                        await self._annotate(session_id, tool_call_annotation(event.name, event.args))
                    elif isinstance(event, ToolProgressUpdate):
                        await self._annotate(session_id, tool_progress_annotation(event.name, event.message))
                    elif isinstance(event, ToolResultEvent):
                        persisted = await self._flush(session_id, history, persisted)
                        await self._annotate(session_id, tool_result_annotation(event.name, event.result))
                        await self._record_usage(session_id, event, call_args)

            except Exception as e:
                logger.error("Turn failed", session_id=session_id, error=str(e))
                turn.error = e
            finally:
                if history is not None:
                    try:
                        turn.history_length = await self._reconcile(session_id, history)
                    except Exception as e:
                        logger.error("Failed to persist turn", session_id=session_id, error=str(e))
                        if turn.error is None:
                            turn.error = e
                turn.finish()

        logger.info("Turn finished", session_id=session_id, history_length=turn.history_length)

    async def _flush(self, session_id: str, history: ConversationHistory, persisted: int) -> int:
        """Store entries appended to ``history`` since the last flush."""
        entries = history.all()
        for entry in entries[persisted:]:
            try:
                await self.store.add_message(session_id, entry)
            except SessionNotFoundError:
                logger.warning("Session vanished during turn", session_id=session_id)
                break
        return len(entries)

    async def _annotate(self, session_id: str, entry: ConversationEntry) -> None:
        if not self.record_annotations:
            return
        try:
            await self.store.add_message(session_id, entry)
        except SessionNotFoundError:
            logger.warning("Session vanished during turn", session_id=session_id)

    async def _record_usage(self, session_id: str, event: ToolResultEvent, args: Any) -> None:
        try:
            await self.store.record_tool_usage(
                session_id=session_id,
                tool_name=event.name,
                args=args,
                result=event.result,
                success=event.success,
                execution_time_ms=event.elapsed_ms,
            )
        except Exception as e:
            logger.warning("Failed to record tool usage", tool=event.name, error=str(e))

    async def _reconcile(self, session_id: str, history: ConversationHistory) -> int:
        """Merge the turn's history into the store; returns the stored length."""
        try:
            await self.store.merge_messages(session_id, history.all())
        except SessionNotFoundError:
            await self.store.create_session(session_id)
            await self.store.update_session(session_id, history.all())

        session = await self.store.get_session(session_id)
        return len(session.messages) if session else len(history)

    async def aclose(self) -> None:
        """Wait for turns still in flight."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
