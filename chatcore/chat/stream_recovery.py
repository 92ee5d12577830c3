"""
Periodically sweeps for conversations stuck in streaming status and recovers them.

Conversations can become orphaned when the producing task dies without
reporting completion or failure (process restart, crashed worker, client that
disconnected before the result arrived). Any `running` conversation whose
updated_at is older than the threshold is handed to the store's idempotent
recovery.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from chatcore.config import STREAM_SWEEP_INTERVAL, STREAM_STUCK_THRESHOLD_MINUTES
from chatcore.db import crud
from chatcore.db.database import get_db
from chatcore.db.models import Conversation

logger = logging.getLogger(__name__)

ListStuck = Callable[[int], Awaitable[list[Conversation]]]
Recover = Callable[[str], Awaitable[bool]]


async def _default_list_stuck(threshold_minutes: int) -> list[Conversation]:
    db = await get_db()
    return await crud.list_stuck_streaming(db, threshold_minutes)


async def _default_recover(conversation_id: str) -> bool:
    db = await get_db()
    return await crud.recover_stream_by_id(db, conversation_id)


class StreamRecovery:
    """
    Background sweeper owning one asyncio task.

    The loop sleeps for `sweep_interval`, runs one sweep to completion, then
    sleeps again, so two sweeps never overlap. Errors inside a sweep are
    logged and the loop keeps going; a conversation that failed to recover is
    still `running` and gets picked up on the next tick.
    """

    def __init__(
        self,
        sweep_interval: float = STREAM_SWEEP_INTERVAL,
        threshold_minutes: int = STREAM_STUCK_THRESHOLD_MINUTES,
        list_stuck: Optional[ListStuck] = None,
        recover: Optional[Recover] = None,
    ) -> None:
        self.sweep_interval = sweep_interval
        self.threshold_minutes = threshold_minutes
        self._list_stuck = list_stuck or _default_list_stuck
        self._recover = recover or _default_recover
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="stream-recovery")
        logger.info(
            f"StreamRecovery: started (interval={self.sweep_interval}s, threshold={self.threshold_minutes}m)"
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("StreamRecovery: stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("StreamRecovery: sweep failed, retrying next tick")

    async def sweep(self) -> list[str]:
        """Run one sweep. Returns the ids of conversations recovered in this pass."""
        stuck = await self._list_stuck(self.threshold_minutes)
        if not stuck:
            return []

        logger.info(f"StreamRecovery: recovering {len(stuck)} stuck conversation(s)")
        recovered = []
        for conversation in stuck:
            logger.info(f"StreamRecovery: recovering {conversation.id}")
            try:
                if await self._recover(conversation.id):
                    recovered.append(conversation.id)
            except Exception:
                logger.exception(f"StreamRecovery: failed to recover {conversation.id}")
        return recovered
