"""Auto-join rooms the bot is invited to."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger

from typit.backend import MessagingBackend
from typit.errors import BackendError
from typit.events import Membership, MembershipChange

INITIAL_JOIN_DELAY_SECONDS = 2.0
MAX_JOIN_DELAY_SECONDS = 3600.0


class MembershipAutoJoiner:
    """Join every room the bot is invited to, retrying with exponential backoff.

    Every invitation gets its own retry task. After a failed attempt the task
    sleeps ``delay`` seconds (2, 4, 8, ...) and tries again; it gives up once
    the next delay would reach one hour.
    """

    def __init__(
        self,
        backend: MessagingBackend,
        *,
        initial_delay: float = INITIAL_JOIN_DELAY_SECONDS,
        max_delay: float = MAX_JOIN_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._tasks: set[asyncio.Task[bool]] = set()

    async def __call__(self, event: MembershipChange) -> None:
        self.handle(event)

    def handle(self, event: MembershipChange) -> asyncio.Task[bool] | None:
        """Start a join task for invitations addressed to the bot, ignore anything else."""
        if event.membership is not Membership.INVITE or event.target != self.backend.user_id:
            return None
        logger.info("membership.invited room_id={} inviter={}", event.room_id, event.sender)
        task = asyncio.create_task(self.join_with_retry(event.room_id))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[bool]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and (exc := task.exception()) is not None:
            logger.opt(exception=exc).error("membership.join.error")

    async def join_with_retry(self, room_id: str) -> bool:
        """Return ``True`` once joined, ``False`` after giving up."""
        delay = self.initial_delay
        while True:
            try:
                await self.backend.join_room(room_id)
            except BackendError as exc:
                if delay >= self.max_delay:
                    logger.error("membership.join.gave_up room_id={} error={}", room_id, exc)
                    return False
                logger.warning("membership.join.retry room_id={} delay={} error={}", room_id, delay, exc)
                await self._sleep(delay)
                delay *= 2
                continue
            logger.info("membership.joined room_id={}", room_id)
            return True
