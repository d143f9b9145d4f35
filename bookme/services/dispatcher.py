"""
Fire-and-forget side effects (notifications, refund-event logging, meeting cleanup).

Callers hand a job name and arguments to an EventDispatcher and move on. The
arq dispatcher enqueues the job on redis for the worker; the inline dispatcher
runs the same worker function as a task in the current event loop.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from arq import create_pool

from ..config import EVENT_DISPATCH_MODE

logger = logging.getLogger(__name__)

SEND_BOOKING_NOTIFICATION = "send_booking_notification_task"
LOG_REFUND_EVENT = "log_refund_event_task"
DELETE_MEETING = "delete_meeting_task"


class EventDispatcher(ABC):
    @abstractmethod
    def dispatch(self, job_name: str, *args: Any) -> None:
        """Hand one job to the worker; never raises into the caller"""

    def notify(self, booking_id, event: str, **data: Any) -> None:
        self.dispatch(SEND_BOOKING_NOTIFICATION, str(booking_id), event, data)

    def log_refund_event(self, booking_id, reason: str, data: Optional[dict] = None) -> None:
        self.dispatch(LOG_REFUND_EVENT, str(booking_id), reason, data or {})

    def delete_meeting(self, booking_id) -> None:
        self.dispatch(DELETE_MEETING, str(booking_id))


# Strong references so pending tasks are not garbage collected mid-flight
_background_tasks: set = set()


def _run_in_background(coro) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        # Called from sync code with no loop (scripts, thread pool): run to completion
        asyncio.run(coro)
        return
    task = loop.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


class ArqDispatcher(EventDispatcher):
    """Enqueue jobs for the arq worker"""

    def __init__(self):
        self._pool = None

    async def _get_pool(self):
        if self._pool is None:
            from ..worker import get_redis_settings

            self._pool = await create_pool(get_redis_settings())
        return self._pool

    async def _enqueue(self, job_name: str, *args: Any) -> None:
        try:
            pool = await self._get_pool()
            await pool.enqueue_job(job_name, *args)
            logger.info(f"📤 Queued {job_name}")
        except Exception as e:
            # Side effects never fail the request that triggered them
            logger.warning(f"⚠️ Failed to queue {job_name}: {e}")

    def dispatch(self, job_name: str, *args: Any) -> None:
        _run_in_background(self._enqueue(job_name, *args))


class InlineDispatcher(EventDispatcher):
    """Run worker jobs in-process, without redis"""

    async def _run(self, job_name: str, *args: Any) -> None:
        from .. import worker

        try:
            await getattr(worker, job_name)({}, *args)
        except Exception as e:
            logger.error(f"❌ Inline job {job_name} failed: {e}")

    def dispatch(self, job_name: str, *args: Any) -> None:
        _run_in_background(self._run(job_name, *args))


_dispatcher: Optional[EventDispatcher] = None


def get_dispatcher() -> EventDispatcher:
    """FastAPI dependency returning the process-wide dispatcher"""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = InlineDispatcher() if EVENT_DISPATCH_MODE == "inline" else ArqDispatcher()
        logger.info(f"📬 Event dispatcher: {type(_dispatcher).__name__}")
    return _dispatcher
