import pytest

from downlink.error_classifier import (
    CHOOSE_OUTPUT_FOLDER, IMPORT_COOKIES, INSTALL_TOOLS, INTERNAL_ERROR, OPEN_PROXY_SETTINGS,
    TOOL_MISSING_ERROR, UPDATE_ENGINE, USE_RECOMMENDED_PRESET, ClassifiedError, ErrorClassifier, ErrorKind
)


@pytest.fixture
def classifier():
    return ErrorClassifier()


@pytest.mark.parametrize('line, kind, action', [
    ("ERROR: [youtube] abc123: Sign in to confirm your age. This video may be inappropriate for some users.",
     ErrorKind.AUTH_REQUIRED, IMPORT_COOKIES),
    ("ERROR: [youtube] abc123: The uploader has not made this video available in your country.",
     ErrorKind.GEO_RESTRICTED, OPEN_PROXY_SETTINGS),
    ("ERROR: [youtube] abc123: Requested format is not available. Use --list-formats for a list of available formats",
     ErrorKind.FORMAT_UNAVAILABLE, USE_RECOMMENDED_PRESET),
    ("ERROR: Unsupported URL: https://example.com/page",
     ErrorKind.EXTRACTOR_OUTDATED, UPDATE_ENGINE),
    ("ERROR: Postprocessing: ffprobe and ffmpeg not found. Please install or provide the path using --ffmpeg-location",
     ErrorKind.TOOL_MISSING, INSTALL_TOOLS),
    ("ERROR: unable to open for writing: [Errno 13] Permission denied: '/out/video.mp4.part'",
     ErrorKind.DISK_ERROR, CHOOSE_OUTPUT_FOLDER),
])
def test_known_failures_map_to_kind_and_action(classifier, line, kind, action):
    error = classifier.classify(1, ["[youtube] abc123: Downloading webpage", line])
    assert error.kind is kind
    assert action in error.actions


def test_unavailable_has_no_remediation(classifier):
    error = classifier.classify(1, ["ERROR: [youtube] abc123: Video unavailable. This video has been removed by the uploader"])
    assert error.kind is ErrorKind.UNAVAILABLE
    assert error.actions == ()


def test_network_error(classifier):
    error = classifier.classify(1, [
        "ERROR: [generic] Unable to download webpage: <urlopen error [Errno -3] Temporary failure in name resolution>",
    ])
    assert error.kind is ErrorKind.NETWORK_ERROR


def test_error_lines_outrank_warnings(classifier):
    lines = [
        "WARNING: [youtube] Sign in to confirm you're not a bot is sometimes shown for this client",
        "ERROR: [youtube] abc123: Unable to download webpage: HTTP Error 503: Service Unavailable",
    ]
    assert classifier.classify(1, lines).kind is ErrorKind.NETWORK_ERROR


def test_missing_executable_exit_code(classifier):
    assert classifier.classify(127, []) == TOOL_MISSING_ERROR


def test_unmatched_failure_is_unknown_with_exit_code(classifier):
    error = classifier.classify(2, ["something nobody anticipated"])
    assert error.kind is ErrorKind.UNKNOWN
    assert "exit code 2" in error.user_message


def test_classifier_never_raises(classifier):
    def broken_lines():
        yield "ERROR: first"
        raise RuntimeError("reader exploded")

    assert classifier.classify(1, broken_lines()) == INTERNAL_ERROR
    assert classifier.classify(None, [None, ""]).kind is ErrorKind.UNKNOWN


def test_only_fatal_lines_stop_early(classifier):
    assert classifier.classify_fatal("ERROR: unable to write data: [Errno 28] No space left on device").kind \
        is ErrorKind.DISK_ERROR
    assert classifier.classify_fatal("ERROR: [youtube] abc: Sign in to confirm your age") is None
    assert classifier.classify_fatal("[download] No space left on device") is None


def test_classified_error_round_trips_unknown_kind():
    restored = ClassifiedError.from_dict({'kind': 'somethingNew', 'user_message': 'x', 'actions': []})
    assert restored.kind is ErrorKind.UNKNOWN
    assert restored.user_message == 'x'
