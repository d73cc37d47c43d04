import pytest

from downlink.error_classifier import UNAVAILABLE_ERROR
from downlink.exceptions import InvalidTransitionError
from downlink.jobs import ALLOWED_TRANSITIONS, JobRecord, JobStatus, SourceKind


def make_job() -> JobRecord:
    return JobRecord.new_single('https://media.example.com/watch/1', 'recommended_best', '/downloads')


def test_new_jobs_start_queued_and_parents_start_fetching():
    assert make_job().status is JobStatus.QUEUED
    parent = JobRecord.new_playlist_parent('https://media.example.com/playlist?list=PL1', 'mp4_best', '/downloads')
    assert parent.source_kind is SourceKind.PLAYLIST_PARENT
    assert parent.status is JobStatus.FETCHING


def test_happy_path_transitions():
    job = make_job()
    for status in (JobStatus.FETCHING, JobStatus.READY, JobStatus.DOWNLOADING, JobStatus.POSTPROCESSING):
        job.transition(status)
    job.mark_done('/downloads/video.mp4')
    assert job.status is JobStatus.DONE
    assert job.percent == 100.0
    assert job.final_path == '/downloads/video.mp4'


def test_terminal_statuses_have_no_exits():
    assert ALLOWED_TRANSITIONS[JobStatus.DONE] == frozenset()
    assert ALLOWED_TRANSITIONS[JobStatus.CANCELED] == frozenset()
    assert ALLOWED_TRANSITIONS[JobStatus.FAILED] == frozenset({JobStatus.QUEUED})


def test_forbidden_transition_raises_and_leaves_job_unchanged():
    job = make_job()
    with pytest.raises(InvalidTransitionError):
        job.transition(JobStatus.DONE)
    assert job.status is JobStatus.QUEUED


def test_slot_and_finished_flags():
    assert JobStatus.FETCHING.holds_slot and JobStatus.POSTPROCESSING.holds_slot
    assert not JobStatus.QUEUED.holds_slot and not JobStatus.STOPPED.holds_slot
    assert JobStatus.FAILED.is_finished and not JobStatus.FAILED.is_terminal
    assert JobStatus.CANCELED.is_terminal


def test_serialization_drops_transient_rates():
    job = make_job()
    job.transition(JobStatus.FETCHING)
    job.speed_bps, job.eta_seconds, job.percent = 1000, 30, 12.5
    job.mark_failed(UNAVAILABLE_ERROR)

    data = job.to_dict()
    assert 'speed_bps' not in data and 'eta_seconds' not in data
    assert data['status'] == 'failed'
    assert data['error']['kind'] == 'unavailable'

    restored = JobRecord.from_dict(data)
    assert restored.status is JobStatus.FAILED
    assert restored.error == UNAVAILABLE_ERROR
    assert restored.percent == 12.5
    assert restored.created_at == job.created_at
    assert restored.speed_bps is None


def test_from_dict_ignores_unknown_keys():
    data = make_job().to_dict()
    data['something_new'] = True
    assert JobRecord.from_dict(data).job_id == data['job_id']
