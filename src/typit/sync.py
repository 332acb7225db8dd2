"""Long-poll sync loop with durable cursor persistence."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, NoReturn, TypeAlias

from loguru import logger

from typit.backend import MessagingBackend
from typit.errors import BackendError
from typit.events import LAZY_LOADING_FILTER, InboundEvent, MembershipChange, SyncBatch
from typit.session import Session, SessionStore

EventHandler: TypeAlias = Callable[[Any], Awaitable[None]]


class SyncState(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIAL_SYNC = "initial_sync"
    STREAMING = "streaming"


class SyncEngine:
    """Drive the sync loop, dispatch events to handlers and persist the cursor.

    Each handler invocation runs as its own task. The cursor of a batch is
    persisted after the batch's handlers have been started and before the
    next request, so an event may be seen twice after a crash but never lost.
    """

    def __init__(
        self,
        backend: MessagingBackend,
        store: SessionStore,
        session: Session,
        *,
        sync_filter: dict[str, Any] | None = None,
        timeout_ms: int = 30_000,
        retry_seconds: float = 1.0,
        replay_initial: tuple[type, ...] = (MembershipChange,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.store = store
        self.session = session
        self.sync_filter = sync_filter if sync_filter is not None else LAZY_LOADING_FILTER
        self.timeout_ms = timeout_ms
        self.retry_seconds = retry_seconds
        self.replay_initial = replay_initial
        self._sleep = sleep
        self._state = SyncState.UNINITIALIZED
        self._handlers: dict[type, list[EventHandler]] = defaultdict(list)
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def cursor(self) -> str | None:
        return self.session.cursor

    def add_handler(self, event_type: type, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    async def run(self) -> NoReturn:
        """Sync until an unrecoverable error is raised."""
        await self.initial_sync()
        logger.info("sync.ready user_id={} cursor={}", self.backend.user_id, self.cursor)
        while True:
            await self.sync_once()

    async def initial_sync(self) -> SyncBatch:
        """Establish a cursor, retrying until the homeserver answers.

        Only events of ``replay_initial`` types are dispatched from this batch;
        messages that arrived while the bot was offline are skipped.
        """
        self._state = SyncState.INITIAL_SYNC
        logger.info("sync.initial.start restored_cursor={}", self.cursor is not None)
        while True:
            try:
                batch = await self.backend.sync_once(self.cursor, self.sync_filter, self.timeout_ms)
            except BackendError as exc:
                logger.warning("sync.initial.error error={}", exc)
                await self._sleep(self.retry_seconds)
                continue
            break

        self.dispatch([event for event in batch.events if isinstance(event, self.replay_initial)])
        self._commit(batch)
        self._state = SyncState.STREAMING
        return batch

    async def sync_once(self) -> SyncBatch | None:
        """Run one streaming request. Returns ``None`` when the request failed and will be retried."""
        try:
            batch = await self.backend.sync_once(self.cursor, self.sync_filter, self.timeout_ms)
        except BackendError as exc:
            logger.warning("sync.error cursor={} error={}", self.cursor, exc)
            await self._sleep(self.retry_seconds)
            return None

        self.dispatch(batch.events)
        self._commit(batch)
        return batch

    def dispatch(self, events: list[InboundEvent]) -> list[asyncio.Task[None]]:
        """Start one task per (event, handler) pair, in event order."""
        started: list[asyncio.Task[None]] = []
        for event in events:
            for handler in self._handlers.get(type(event), ()):
                task = asyncio.create_task(self._run_handler(handler, event))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                started.append(task)
        return started

    def _commit(self, batch: SyncBatch) -> None:
        # SessionStoreError propagates: continuing without a persisted cursor risks unbounded replay.
        self.store.persist_cursor(batch.next_cursor)
        self.session.cursor = batch.next_cursor
        logger.debug("sync.batch events={} cursor={}", len(batch.events), batch.next_cursor)

    @staticmethod
    async def _run_handler(handler: EventHandler, event: InboundEvent) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception("sync.handler.error handler={} event={}", getattr(handler, "__qualname__", handler), event)
