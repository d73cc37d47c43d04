import pytest

from conftest import wait_for
from downlink.error_classifier import UNAVAILABLE_ERROR, ErrorKind
from downlink.events import PlaylistExpanded
from downlink.exceptions import InvariantViolation, PlaylistExpansionError, URLExtractionError
from downlink.jobs import JobRecord, JobStatus, SourceKind
from downlink.playlist import EntryOverride, PlaylistExpander
from downlink.scheduler import Scheduler
from downlink.url_extractor import PlaylistEntry

PLAYLIST_URL = 'https://media.example.com/playlist?list=PL123'


class FakeEnumerator:
    def __init__(self, entries=None, error=None):
        self.entries = entries if entries is not None else [
            PlaylistEntry('https://media.example.com/watch/1', title='One', duration_seconds=60),
            PlaylistEntry('https://media.example.com/watch/2', title='[Private video]', available=False),
            PlaylistEntry('https://media.example.com/watch/3', title='Three', uploader='Uploader'),
        ]
        self.error = error
        self.calls = 0

    async def enumerate_playlist(self, url):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.entries)


def make_parent(out='/downloads') -> JobRecord:
    return JobRecord.new_playlist_parent(PLAYLIST_URL, 'audio_m4a', out)


@pytest.mark.asyncio
async def test_expander_builds_children_in_order():
    parent = make_parent()
    children = await PlaylistExpander(FakeEnumerator()).expand(parent)

    assert [c.playlist_index for c in children] == [1, 2, 3]
    assert all(c.parent_id == parent.job_id for c in children)
    assert all(c.source_kind is SourceKind.PLAYLIST_ITEM for c in children)
    assert all(c.preset_id == 'audio_m4a' and c.output_dir == '/downloads' for c in children)
    assert [c.status for c in children] == [JobStatus.QUEUED, JobStatus.FAILED, JobStatus.QUEUED]
    assert children[1].error == UNAVAILABLE_ERROR
    assert children[0].duration_seconds == 60
    assert children[2].uploader == 'Uploader'


@pytest.mark.asyncio
async def test_expander_applies_overrides_and_is_idempotent():
    parent = make_parent()
    expander = PlaylistExpander(FakeEnumerator())
    children = await expander.expand(parent, overrides={3: EntryOverride(preset_id='mp4_1080p', output_dir='/video')})

    assert (children[2].preset_id, children[2].output_dir) == ('mp4_1080p', '/video')
    assert children[0].preset_id == 'audio_m4a'
    assert await expander.expand(parent, existing_children=children) == []


@pytest.mark.asyncio
async def test_expander_rejects_non_playlist_jobs():
    single = JobRecord.new_single('https://media.example.com/watch/1', 'recommended_best', '/downloads')
    with pytest.raises(InvariantViolation):
        await PlaylistExpander(FakeEnumerator()).expand(single)


@pytest.mark.asyncio
async def test_enumeration_failure_is_classified():
    error = URLExtractionError("boom", exit_code=1,
                               lines=["ERROR: [youtube:tab] PL123: This playlist does not exist"])
    with pytest.raises(PlaylistExpansionError) as exc_info:
        await PlaylistExpander(FakeEnumerator(error=error)).expand(make_parent())
    assert exc_info.value.error.kind is ErrorKind.UNAVAILABLE


@pytest.mark.asyncio
async def test_scheduler_fans_out_playlist(settings, fake_orchestrator, bus, recorder):
    scheduler = Scheduler(settings, fake_orchestrator, bus, expander=PlaylistExpander(FakeEnumerator()))
    parent = await scheduler.expand_playlist(PLAYLIST_URL)
    assert parent.status is JobStatus.FETCHING

    await wait_for(lambda: len(fake_orchestrator.started) == 2)
    children = scheduler.children_of(parent.job_id)
    assert len(children) == 3
    assert fake_orchestrator.started == [children[0].job_id, children[2].job_id]
    assert scheduler.get(parent.job_id).status is JobStatus.READY

    await wait_for(lambda: all(scheduler.get(c).status is JobStatus.DOWNLOADING for c in fake_orchestrator.started))
    progress = scheduler.playlist_progress(parent.job_id)
    assert (progress.total, progress.failed, progress.active) == (3, 1, 2)
    assert progress.status is JobStatus.DOWNLOADING

    for child_id in list(fake_orchestrator.started):
        await fake_orchestrator.complete(child_id)
    progress = scheduler.playlist_progress(parent.job_id)
    assert progress.completed == 2
    assert progress.remaining == 0
    assert progress.percent == pytest.approx(200 / 3)
    assert progress.status is JobStatus.FAILED

    assert await scheduler.expand(parent.job_id) == []
    assert len(scheduler.children_of(parent.job_id)) == 3

    await scheduler.shutdown()
    await bus.join()
    expanded = recorder.of_type(PlaylistExpanded)
    assert len(expanded) == 1
    assert expanded[0].count == 3
    assert expanded[0].child_ids == tuple(c.job_id for c in children)


@pytest.mark.asyncio
async def test_submit_urls_routes_playlists_to_expansion(settings, fake_orchestrator, bus):
    scheduler = Scheduler(settings, fake_orchestrator, bus, expander=PlaylistExpander(FakeEnumerator()))
    records = await scheduler.submit_urls(f"{PLAYLIST_URL}\nhttps://media.example.com/watch/9")

    assert records[0].source_kind is SourceKind.PLAYLIST_PARENT
    assert records[1].source_kind is SourceKind.SINGLE
    await scheduler.settle()
    assert len(scheduler.children_of(records[0].job_id)) == 3
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_failed_expansion_fails_parent_and_retry_expands_again(settings, fake_orchestrator, bus):
    enumerator = FakeEnumerator(error=URLExtractionError("offline", exit_code=1,
                                                         lines=["ERROR: Unable to download webpage: timed out"]))
    scheduler = Scheduler(settings, fake_orchestrator, bus, expander=PlaylistExpander(enumerator))
    parent = await scheduler.expand_playlist(PLAYLIST_URL)
    await scheduler.settle()

    failed = scheduler.get(parent.job_id)
    assert failed.status is JobStatus.FAILED
    assert failed.error.kind is ErrorKind.NETWORK_ERROR

    enumerator.error = None
    await scheduler.retry(parent.job_id)
    await scheduler.settle()
    assert enumerator.calls == 2
    assert scheduler.get(parent.job_id).error is None
    assert len(scheduler.children_of(parent.job_id)) == 3
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_commands_on_parent_fan_out_to_children(settings, fake_orchestrator, bus):
    settings.max_concurrent_downloads = 1
    scheduler = Scheduler(settings, fake_orchestrator, bus, expander=PlaylistExpander(FakeEnumerator()))
    parent = await scheduler.expand_playlist(PLAYLIST_URL)
    await wait_for(lambda: len(fake_orchestrator.started) == 1 and
                   scheduler.get(fake_orchestrator.started[0]).status is JobStatus.DOWNLOADING)

    await scheduler.stop(parent.job_id)
    await wait_for(lambda: scheduler.active_count == 0)
    statuses = [c.status for c in scheduler.children_of(parent.job_id)]
    assert statuses == [JobStatus.STOPPED, JobStatus.FAILED, JobStatus.STOPPED]
    assert scheduler.playlist_progress(parent.job_id).status is JobStatus.STOPPED

    await scheduler.cancel(parent.job_id)
    statuses = [c.status for c in scheduler.children_of(parent.job_id)]
    assert statuses == [JobStatus.CANCELED, JobStatus.FAILED, JobStatus.CANCELED]
    assert scheduler.get(parent.job_id).status is JobStatus.CANCELED
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_removing_parent_removes_children(settings, fake_orchestrator, bus):
    scheduler = Scheduler(settings, fake_orchestrator, bus, expander=PlaylistExpander(FakeEnumerator()))
    parent = await scheduler.expand_playlist(PLAYLIST_URL)
    await wait_for(lambda: len(fake_orchestrator.started) == 2 and
                   all(scheduler.get(c).status is JobStatus.DOWNLOADING for c in fake_orchestrator.started))

    await scheduler.remove(parent.job_id)
    await wait_for(lambda: scheduler.jobs() == [])
    assert scheduler.active_count == 0
    await scheduler.shutdown()
