"""
Engine -> UI events and the bus that fans them out to listeners.

Each event kind is its own frozen dataclass. Publishing never blocks the
publisher: every listener owns a FIFO queue drained by its own task, so a slow
or failing listener cannot stall the scheduler or reorder another listener's
events.
"""

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

from .error_classifier import ErrorKind, RemediationAction
from .jobs import JobStatus
from .progress import ProgressEvent


@dataclass(frozen=True)
class EngineEvent:
    job_id: str
    # Assigned by the bus on publish; strictly increasing across all events.
    seq: int = field(default=0, compare=False)

    @property
    def name(self) -> str:
        return EVENT_NAMES[type(self)]


@dataclass(frozen=True)
class JobQueued(EngineEvent):
    pass


@dataclass(frozen=True)
class JobStatusChanged(EngineEvent):
    """Transitions that have no dedicated event (fetching, ready)."""
    status: JobStatus = JobStatus.QUEUED
    phase: Optional[str] = None


@dataclass(frozen=True)
class JobStarted(EngineEvent):
    pass


@dataclass(frozen=True)
class JobProgress(EngineEvent):
    status: JobStatus = JobStatus.DOWNLOADING
    progress: ProgressEvent = field(default_factory=ProgressEvent)
    phase: Optional[str] = None


@dataclass(frozen=True)
class JobPostProcessing(EngineEvent):
    step: str = ''


@dataclass(frozen=True)
class JobStopped(EngineEvent):
    percent: Optional[float] = None
    bytes_downloaded: Optional[int] = None


@dataclass(frozen=True)
class JobCanceled(EngineEvent):
    pass


@dataclass(frozen=True)
class JobCompleted(EngineEvent):
    final_path: str = ''


@dataclass(frozen=True)
class JobFailed(EngineEvent):
    kind: ErrorKind = ErrorKind.UNKNOWN
    message: str = ''
    actions: Tuple[RemediationAction, ...] = ()


@dataclass(frozen=True)
class JobRemoved(EngineEvent):
    pass


@dataclass(frozen=True)
class MetadataReady(EngineEvent):
    title: Optional[str] = None
    uploader: Optional[str] = None
    duration_seconds: Optional[int] = None
    thumbnail_url: Optional[str] = None


@dataclass(frozen=True)
class PlaylistExpanded(EngineEvent):
    """`job_id` is the playlist parent."""
    child_ids: Tuple[str, ...] = ()
    count: int = 0


EVENT_NAMES = {
    JobQueued: 'queued',
    JobStatusChanged: 'status_changed',
    JobStarted: 'started',
    JobProgress: 'progress',
    JobPostProcessing: 'postprocessing_step',
    JobStopped: 'stopped',
    JobCanceled: 'canceled',
    JobCompleted: 'completed',
    JobFailed: 'failed',
    JobRemoved: 'removed',
    MetadataReady: 'metadata_ready',
    PlaylistExpanded: 'playlist_expanded',
}

TERMINAL_EVENTS = (JobCompleted, JobFailed, JobCanceled)

Listener = Callable[[EngineEvent], Union[None, Awaitable[None]]]


class _Subscription:
    def __init__(self, listener: Listener):
        self.listener = listener
        self.queue: asyncio.Queue = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None


class EventBus:
    """Fans events out to subscribed listeners, preserving publish order per listener."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._subscriptions: List[_Subscription] = []
        self._seq = itertools.count(1)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Registers a listener (plain or async callable). Returns an unsubscribe function.

        The listener's delivery task starts lazily on the first publish inside a
        running event loop.
        """
        subscription = _Subscription(listener)
        self._subscriptions.append(subscription)

        def unsubscribe():
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
            if subscription.task is not None:
                subscription.task.cancel()
        return unsubscribe

    def publish(self, event: EngineEvent) -> EngineEvent:
        """Stamps the event with a sequence number and queues it for every listener."""
        stamped = _with_seq(event, next(self._seq))
        for subscription in list(self._subscriptions):
            subscription.queue.put_nowait(stamped)
            self._ensure_pump(subscription)
        return stamped

    async def join(self):
        """Waits until every listener has processed every event published so far."""
        for subscription in list(self._subscriptions):
            await subscription.queue.join()

    async def close(self):
        await self.join()
        for subscription in self._subscriptions:
            if subscription.task is not None:
                subscription.task.cancel()
        tasks = [s.task for s in self._subscriptions if s.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._subscriptions.clear()

    def _ensure_pump(self, subscription: _Subscription):
        if subscription.task is None or subscription.task.done():
            try:
                subscription.task = asyncio.get_running_loop().create_task(self._pump(subscription))
            except RuntimeError:
                # No loop yet; events stay queued until the first publish inside one.
                pass

    async def _pump(self, subscription: _Subscription):
        while True:
            event = await subscription.queue.get()
            try:
                result = subscription.listener(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception(f"Event listener failed on {event.name} for job {event.job_id}")
            finally:
                subscription.queue.task_done()


def _with_seq(event: EngineEvent, seq: int) -> EngineEvent:
    object.__setattr__(event, 'seq', seq)
    return event


def describe(event: EngineEvent) -> str:
    """One-line summary used by log-based listeners."""
    detail: Any = ''
    if isinstance(event, JobProgress) and event.progress.percent is not None:
        detail = f" {event.progress.percent:.1f}%"
    elif isinstance(event, JobPostProcessing):
        detail = f" {event.step}"
    elif isinstance(event, JobCompleted):
        detail = f" -> {event.final_path}"
    elif isinstance(event, JobFailed):
        detail = f" [{event.kind.value}] {event.message}"
    elif isinstance(event, PlaylistExpanded):
        detail = f" ({event.count} items)"
    return f"[{event.job_id}] {event.name}{detail}"
