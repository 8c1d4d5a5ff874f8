"""Progress fan-out over a single Redis pub/sub channel.

Workers call ``emit``; any process that started a broadcaster receives every
event on the shared channel and hands it to the subscribers registered for
that project. Each subscriber is drained by its own task through a bounded
queue, so a slow callback never blocks ``emit`` or its neighbours.

There is no replay: a subscriber only sees events published after it
subscribed. Clients read authoritative progress from the project row.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import contextlib
import inspect
import itertools
from typing import TYPE_CHECKING

from pydantic import ValidationError
from redis.exceptions import RedisError
import structlog

from .contracts.events import PROGRESS_ERROR, ProgressUpdate

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub

    from .store import ProjectStore

logger = structlog.get_logger(__name__)

PROGRESS_CHANNEL = "launchpad:progress"

ProgressCallback = Callable[[ProgressUpdate], Awaitable[None] | None]


class _Subscription:
    def __init__(self, project_id: str, callback: ProgressCallback, max_pending: int):
        self.project_id = project_id
        self.callback = callback
        self.queue: asyncio.Queue[ProgressUpdate] = asyncio.Queue(maxsize=max_pending)
        self.task: asyncio.Task | None = None

    def offer(self, update: ProgressUpdate) -> None:
        if self.task is None:
            self.task = asyncio.create_task(self._drain())
        try:
            self.queue.put_nowait(update)
        except asyncio.QueueFull:
            logger.warning(
                "progress_event_dropped",
                project_id=self.project_id,
                stage=update.stage,
                progress=update.progress,
            )

    async def _drain(self) -> None:
        while True:
            update = await self.queue.get()
            try:
                result = self.callback(update)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "progress_callback_failed",
                    project_id=self.project_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            finally:
                self.queue.task_done()

    def close(self) -> None:
        if self.task is not None:
            self.task.cancel()
            self.task = None


class ProgressBroadcaster:
    """Shared publish channel plus a per-project subscriber registry.

    Constructed once per process and injected into workers.
    """

    def __init__(self, redis: Redis, channel: str = PROGRESS_CHANNEL, max_pending: int = 100):
        self.redis = redis
        self.channel = channel
        self.max_pending = max_pending
        self._subscribers: dict[str, dict[int, _Subscription]] = {}
        self._ids = itertools.count()
        self._pubsub: PubSub | None = None
        self._listener: asyncio.Task | None = None

    async def emit(self, project_id: str, progress: int, stage: str, message: str = "") -> None:
        """Publish one event. Publish failures are logged, never raised."""
        update = ProgressUpdate(project_id=project_id, progress=progress, stage=stage, message=message)
        try:
            await self.redis.publish(self.channel, update.model_dump_json())
        except (RedisError, OSError) as e:
            logger.warning(
                "progress_publish_failed",
                project_id=project_id,
                stage=stage,
                error=str(e),
                error_type=type(e).__name__,
            )

    def subscribe(self, project_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """Register ``callback`` for one project. Returns the unsubscribe function."""
        sub_id = next(self._ids)
        self._subscribers.setdefault(project_id, {})[sub_id] = _Subscription(
            project_id, callback, self.max_pending
        )

        def unsubscribe() -> None:
            subs = self._subscribers.get(project_id)
            if not subs or sub_id not in subs:
                return
            subs.pop(sub_id).close()
            if not subs:
                del self._subscribers[project_id]

        return unsubscribe

    def subscriber_count(self, project_id: str) -> int:
        return len(self._subscribers.get(project_id, {}))

    def dispatch(self, update: ProgressUpdate) -> None:
        """Hand ``update`` to every local subscriber of its project."""
        for sub in list(self._subscribers.get(update.project_id, {}).values()):
            sub.offer(update)

    async def start(self) -> None:
        if self._listener is not None:
            return
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._listener = asyncio.create_task(self._listen())
        logger.info("progress_listener_started", channel=self.channel)

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None
        for subs in self._subscribers.values():
            for sub in subs.values():
                sub.close()
        self._subscribers.clear()
        logger.info("progress_listener_stopped", channel=self.channel)

    async def _listen(self) -> None:
        assert self._pubsub is not None
        while True:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except (RedisError, OSError) as e:
                logger.error("progress_listener_error", error=str(e), error_type=type(e).__name__)
                await asyncio.sleep(1)
                continue
            if message is None:
                continue
            try:
                update = ProgressUpdate.model_validate_json(message["data"])
            except ValidationError as e:
                logger.warning("progress_message_invalid", error=str(e))
                continue
            self.dispatch(update)


class ProgressReporter:
    """Per-job progress writer.

    Keeps emitted progress non-decreasing within the job until the single
    terminal ``-1`` and mirrors it onto the project row when ``persist`` is set.
    """

    def __init__(
        self,
        broadcaster: ProgressBroadcaster,
        project_id: str,
        store: ProjectStore | None = None,
        persist: bool = True,
    ):
        self.broadcaster = broadcaster
        self.project_id = project_id
        self.store = store
        self.persist = persist and store is not None
        self.last_progress = 0
        self.failed = False

    async def report(self, progress: int, stage: str, message: str = "") -> int:
        if self.failed:
            return PROGRESS_ERROR
        progress = max(self.last_progress, min(progress, 100))
        self.last_progress = progress
        if self.persist:
            await self.store.update_progress(self.project_id, progress, stage)
        await self.broadcaster.emit(self.project_id, progress, stage, message)
        return progress

    async def fail(self, message: str, stage: str = "error") -> None:
        if self.failed:
            return
        self.failed = True
        await self.broadcaster.emit(self.project_id, PROGRESS_ERROR, stage, message)
