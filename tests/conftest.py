"""Test configuration and fixtures"""

import sys
import asyncio
from collections import deque
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from downlink.config import Settings
from downlink.constants import ENGINE_TOOL
from downlink.error_classifier import ClassifiedError
from downlink.events import EngineEvent, EventBus
from downlink.exceptions import ToolUnavailableError
from downlink.process import OutcomeKind, ProcessOutcome
from downlink.progress import ProgressEvent
from downlink.storage import MemoryJobStore
from downlink.tools import StaticToolProvider

# A stand-in for yt-dlp. The last path segment of the URL picks the behaviour.
FAKE_ENGINE_SOURCE = '''#!{python}
import json
import os
import signal
import sys
import time

sys.stdout.reconfigure(line_buffering=True)
sys.stderr.reconfigure(line_buffering=True)


def progress(done, total):
    print(f"[downlink] {{done}}/{{total}}/NA/2048.0/3/ {{done * 100.0 / total:.1f}}%")


def main():
    args = sys.argv[1:]
    if args and args[0] == "--version":
        print("2024.08.06")
        return 0
    signal.signal(signal.SIGINT, lambda *_: sys.exit(1))
    url = args[args.index("--") + 1]
    behaviour = url.rstrip("/").rsplit("/", 1)[-1]

    if "--dump-single-json" in args:
        if behaviour == "broken":
            print("ERROR: [generic] Unable to download webpage: timed out", file=sys.stderr)
            return 1
        print(json.dumps({{"webpage_url": url, "title": "Fake " + behaviour, "uploader": "Tester",
                          "duration": 61, "thumbnail": "https://img.example.com/t.jpg"}}))
        return 0
    if "--flat-playlist" in args:
        if behaviour == "missing":
            print("ERROR: [youtube:tab] PLx: This playlist does not exist", file=sys.stderr)
            return 1
        print("[youtube:tab] Downloading playlist")
        for index, title in enumerate(("One", "[Private video]", "Three"), start=1):
            print(json.dumps({{"url": f"https://media.example.com/watch/{{index}}", "title": title}}))
        return 0

    template = args[args.index("-o") + 1]
    temp_dir = next(a[len("temp:"):] for a in args if a.startswith("temp:"))
    out = os.path.join(os.path.dirname(template), "video.mp4")
    os.makedirs(os.path.dirname(out), exist_ok=True)

    if behaviour == "ok":
        print(f"[download] Destination: {{out}}.f137.mp4")
        for done in (100, 500, 1000):
            progress(done, 1000)
        print(f'[Merger] Merging formats into "{{out}}"')
        with open(out, "w") as f:
            f.write("media")
        return 0
    if behaviour == "burst":
        print(f"[download] Destination: {{out}}")
        for done in range(1, 201):
            progress(done, 200)
        with open(out, "w") as f:
            f.write("media")
        return 0
    if behaviour == "nofile":
        print(f"[download] Destination: {{out}}")
        progress(10, 10)
        return 0
    if behaviour == "auth":
        print("[youtube] abc123: Downloading webpage")
        print("ERROR: [youtube] abc123: Sign in to confirm your age. "
              "This video may be inappropriate for some users.", file=sys.stderr)
        return 1
    if behaviour == "diskfull":
        print(f"[download] Destination: {{out}}")
        progress(1, 10)
        print("ERROR: unable to write data: [Errno 28] No space left on device", file=sys.stderr)
        time.sleep(30)
        return 1
    if behaviour == "slow":
        for path in (os.path.join(temp_dir, "video.mp4.part"), out + ".part"):
            with open(path, "w") as f:
                f.write("partial")
        print(f"[download] Destination: {{out}}")
        for done in range(1, 601):
            progress(done, 600)
            time.sleep(0.05)
        return 0
    print("ERROR: Unsupported URL: " + url, file=sys.stderr)
    return 1


sys.exit(main())
'''


def write_fake_engine(directory: Path, name: str = ENGINE_TOOL) -> Path:
    """Writes the fake engine script into `directory` and makes it executable."""
    directory.mkdir(parents=True, exist_ok=True)
    script = directory / name
    script.write_text(FAKE_ENGINE_SOURCE.format(python=sys.executable), encoding='utf-8')
    script.chmod(0o755)
    return script


async def wait_for(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01):
    """Polls `condition` until it holds, failing the test after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


class EventRecorder:
    """Bus listener that keeps every event it receives."""

    def __init__(self):
        self.events: List[EngineEvent] = []

    def __call__(self, event: EngineEvent):
        self.events.append(event)

    def for_job(self, job_id: str) -> List[EngineEvent]:
        return [e for e in self.events if e.job_id == job_id]

    def names(self, job_id: str) -> List[str]:
        return [e.name for e in self.for_job(job_id)]

    def of_type(self, event_type) -> List[EngineEvent]:
        return [e for e in self.events if isinstance(e, event_type)]


class FakeHandle:
    def __init__(self, job_id: str):
        self.job_id = job_id
        self.buffer: deque = deque()
        self.watcher = None
        self.stop_reason: Optional[str] = None


class FakeOrchestrator:
    """
    Records what the scheduler asks for instead of running processes.

    Tests finish a "process" explicitly with `complete` or `fail`. Stop and
    cancel requests end the process on the next loop iteration.
    """

    def __init__(self):
        self.started: List[str] = []
        self.handles: Dict[str, FakeHandle] = {}
        self.discarded: List[str] = []
        self.swapped: List[str] = []
        self.kept: Optional[set] = None
        self.start_error: Optional[ClassifiedError] = None
        self.observer = None
        self._tasks = set()

    async def initialize(self, keep_job_ids=()):
        self.kept = set(keep_job_ids)

    def tool_swapped(self, tool: str):
        self.swapped.append(tool)

    async def start(self, job, observer):
        if self.start_error is not None:
            raise ToolUnavailableError(self.start_error)
        self.observer = observer
        handle = FakeHandle(job.job_id)
        self.handles[job.job_id] = handle
        self.started.append(job.job_id)
        return handle

    def request_stop(self, handle: FakeHandle):
        if handle.stop_reason is None:
            handle.stop_reason = 'stop'
            self._schedule_interrupt(handle)

    def request_cancel(self, handle: FakeHandle):
        if handle.stop_reason is None:
            self._schedule_interrupt(handle)
        handle.stop_reason = 'cancel'

    def _schedule_interrupt(self, handle: FakeHandle):
        task = asyncio.get_running_loop().create_task(self._interrupted(handle))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _interrupted(self, handle: FakeHandle):
        await asyncio.sleep(0)
        kind = OutcomeKind.CANCELED if handle.stop_reason == 'cancel' else OutcomeKind.STOPPED
        if kind is OutcomeKind.CANCELED:
            await self.discard_artifacts(handle.job_id)
        await self._exit(handle.job_id, ProcessOutcome(kind, 1))

    async def discard_artifacts(self, job_id: str, candidate_paths=()):
        self.discarded.append(job_id)

    async def progress(self, job_id: str, event: ProgressEvent):
        await self.observer.on_progress(job_id, event)

    async def complete(self, job_id: str, final_path: str = '/downloads/video.mp4'):
        await self._exit(job_id, ProcessOutcome(OutcomeKind.SUCCEEDED, 0, final_path=final_path))

    async def fail(self, job_id: str, error: ClassifiedError, exit_code: int = 1):
        await self._exit(job_id, ProcessOutcome(OutcomeKind.FAILED, exit_code, error=error))

    async def _exit(self, job_id: str, outcome: ProcessOutcome):
        handle = self.handles.pop(job_id, None)
        if handle is None:
            return
        await self.observer.on_exit(job_id, outcome, list(handle.buffer))


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in the test's temp directory, with metadata probing off."""
    return Settings(
        max_concurrent_downloads=2,
        temp_dir=tmp_path / 'temp',
        default_output_dir=tmp_path / 'out',
        fetch_metadata_before_download=False,
        stop_grace_period_seconds=2.0,
        progress_updates_per_second=4.0,
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    recorder = EventRecorder()
    bus.subscribe(recorder)
    return recorder


@pytest.fixture
def store():
    return MemoryJobStore()


@pytest.fixture
def fake_orchestrator():
    return FakeOrchestrator()


@pytest.fixture
def fake_engine(tmp_path) -> Path:
    return write_fake_engine(tmp_path / 'bin')


@pytest.fixture
def tools(fake_engine):
    return StaticToolProvider({ENGINE_TOOL: fake_engine})
