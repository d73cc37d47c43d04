import sys
import json

import pytest

from conftest import wait_for
from downlink.config import ConfigManager
from downlink.controller import EngineController
from downlink.jobs import JobStatus
from downlink.storage import MemoryJobStore

posix_only = pytest.mark.skipif(sys.platform == 'win32', reason="fake engine is a POSIX script")


@pytest.fixture
def controller(tmp_path, settings, tools):
    manager = ConfigManager(tmp_path / 'config.json')
    return EngineController(manager, settings, tools=tools, store=MemoryJobStore())


@pytest.mark.asyncio
async def test_save_settings_rejects_invalid_values(controller):
    ok, message = await controller.save_settings({'max_concurrent_downloads': 0})
    assert not ok
    assert message.startswith("Error in field 'max_concurrent_downloads'")
    assert controller.config.max_concurrent_downloads == 2
    await controller.shutdown()


@pytest.mark.asyncio
async def test_save_settings_applies_to_running_engine(controller, tmp_path):
    ok, _ = await controller.save_settings({'max_concurrent_downloads': 4, 'metadata_timeout_seconds': 12})

    assert ok
    assert controller.scheduler.concurrency_limit == 4
    assert controller.extractor.timeout == 12
    assert controller.orchestrator.settings.max_concurrent_downloads == 4
    saved = json.loads((tmp_path / 'config.json').read_text(encoding='utf-8'))
    assert saved['max_concurrent_downloads'] == 4
    await controller.shutdown()


@posix_only
@pytest.mark.asyncio
async def test_downloads_end_to_end(controller, fake_engine, settings):
    summaries = []
    controller.summary_callback = summaries.append
    await controller.startup(restore=False)
    assert controller.extractor.yt_dlp_path == fake_engine

    records = await controller.submit_urls(
        "https://media.example.com/watch/ok https://media.example.com/watch/auth"
    )
    ok_id, auth_id = (r.job_id for r in records)
    await wait_for(lambda: not controller.scheduler.has_pending_work(), timeout=20.0)

    assert controller.scheduler.get(ok_id).status is JobStatus.DONE
    assert controller.scheduler.get(ok_id).final_path == str(settings.default_output_dir / 'video.mp4')
    assert controller.scheduler.get(auth_id).status is JobStatus.FAILED
    assert any('Sign in' in line for line in controller.diagnostics(auth_id))

    await controller.shutdown()
    assert controller.summary() == {'completed': 1, 'failed': 1, 'active': 0, 'total': 2}
    assert summaries[-1]['completed'] == 1


@pytest.mark.asyncio
async def test_tool_swap_refreshes_engine_path(controller, tools, tmp_path):
    replacement = tmp_path / 'new' / 'yt-dlp'
    tools.set_tool('yt-dlp', replacement)
    await controller.on_tool_swapped('yt-dlp')
    assert controller.extractor.yt_dlp_path == replacement
    await controller.shutdown()
