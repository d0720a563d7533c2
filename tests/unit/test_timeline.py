import pytest

from cadence.errors import UnknownEventTypeError
from cadence.timeline import FileEventLog, InMemoryEventLog


@pytest.fixture(params=["filesystem", "inmemory"])
def make_log(request, tmp_path):
    def factory(**kwargs):
        if request.param == "filesystem":
            return FileEventLog(str(tmp_path), **kwargs)
        return InMemoryEventLog(**kwargs)

    return factory


@pytest.fixture
def log(make_log):
    return make_log()


def test_append_rejects_unregistered_types(log):
    with pytest.raises(UnknownEventTypeError):
        log.append("s1", "stage:explode", {})
    assert log.query("s1") == []


def test_append_fills_envelope(log):
    event = log.append("s1", "stage:complete", {"stage": "DEV", "result": "pass"})
    assert event.category == "stage"
    assert event.label == "Stage completed"

    stored = log.query("s1")
    assert len(stored) == 1
    assert stored[0].type == "stage:complete"
    assert stored[0].payload == {"stage": "DEV", "result": "pass"}


def test_query_filters_and_limit(log):
    log.append("s1", "workflow:start", {"workflow_type": "quick"})
    for n in range(5):
        log.append("s1", "stage:start", {"n": n})
    log.append("s1", "loop:advance", {"iteration": 1})

    assert [e.payload["n"] for e in log.query("s1", type="stage:start", limit=2)] == [3, 4]
    assert [e.type for e in log.query("s1", category="loop")] == ["loop:advance"]
    assert log.query("s1", limit=0) == []
    assert len(log.query("s1")) == 7
    assert log.count("s1", category="stage") == 5
    assert log.latest("s1", "stage:start").payload["n"] == 4
    assert log.latest("s1", "error:fatal") is None


def test_sessions_are_independent(log):
    log.append("a", "session:start", {})
    log.append("b", "session:start", {})
    log.append("b", "session:end", {})
    assert log.count("a") == 1
    assert log.count("b") == 2


def test_periodic_trim_keeps_newest(make_log):
    log = make_log(max_events=5, trim_interval=3)
    for n in range(1, 11):
        log.append("s1", "stage:start", {"n": n})
    assert [e.payload["n"] for e in log.query("s1")] == [5, 6, 7, 8, 9, 10]


def test_trim_law():
    log = InMemoryEventLog(max_events=2000, trim_interval=100)
    for n in range(2001):
        log.append("s1", "stage:start", {"n": n})
    assert log.count("s1") == 2001

    assert log.trim("s1", 2000) == 1
    events = log.query("s1")
    assert len(events) == 2000
    assert [e.payload["n"] for e in events] == list(range(1, 2001))


def test_trim_to_zero_empties_log(log):
    for n in range(3):
        log.append("s1", "stage:start", {"n": n})
    assert log.trim("s1", 0) == 3
    assert log.count("s1") == 0
    assert log.trim("s1", 0) == 0

    log.append("s1", "stage:start", {"n": 3})
    assert [e.payload["n"] for e in log.query("s1")] == [3]


def test_trim_rejects_negative_count(log):
    log.append("s1", "stage:start", {})
    with pytest.raises(ValueError):
        log.trim("s1", -1)
    assert log.count("s1") == 1


def test_file_trim_rewrites_log(tmp_path):
    log = FileEventLog(str(tmp_path), trim_interval=10_000)
    for n in range(30):
        log.append("s1", "stage:start", {"n": n})
    assert log.trim("s1", 20) == 10
    assert log.trim("s1", 20) == 0
    lines = (tmp_path / "sessions" / "s1" / "timeline.jsonl").read_text().splitlines()
    assert len(lines) == 20
    assert [e.payload["n"] for e in log.query("s1")] == list(range(10, 30))


def test_corrupt_lines_are_skipped(tmp_path):
    log = FileEventLog(str(tmp_path))
    log.append("s1", "session:start", {})
    path = tmp_path / "sessions" / "s1" / "timeline.jsonl"
    with path.open("a") as f:
        f.write("{not json\n")
    log.append("s1", "session:end", {})

    assert [e.type for e in log.query("s1")] == ["session:start", "session:end"]


def test_append_counter_is_persisted(tmp_path):
    first = FileEventLog(str(tmp_path), max_events=2, trim_interval=3)
    first.append("s1", "stage:start", {"n": 1})
    first.append("s1", "stage:start", {"n": 2})

    # a fresh instance continues the count and trims on the third append
    second = FileEventLog(str(tmp_path), max_events=2, trim_interval=3)
    second.append("s1", "stage:start", {"n": 3})
    assert [e.payload["n"] for e in second.query("s1")] == [2, 3]
    assert (tmp_path / "sessions" / "s1" / "timeline.count").read_text() == "3"


def _stage_complete(log, stage, result):
    log.append("s1", "stage:complete", {"stage": stage, "result": result})


def test_reliability_examples(log):
    for result in ["fail", "fail", "fail", "fail"]:
        _stage_complete(log, "TEST", result)
    for result in ["pass", "pass", "pass"]:
        _stage_complete(log, "DEV", result)
    _stage_complete(log, "REVIEW", "fail")
    _stage_complete(log, "REVIEW", "pass")
    log.append("s1", "stage:start", {"stage": "TEST"})

    report = log.compute_reliability("s1")
    test, dev, review = report.stages["TEST"], report.stages["DEV"], report.stages["REVIEW"]
    assert (test.pass1, test.pass3, test.pass_consecutive3) == (False, False, False)
    assert (dev.pass1, dev.pass3, dev.pass_consecutive3) == (True, True, True)
    assert (review.pass1, review.pass3, review.pass_consecutive3) == (False, True, None)
    assert review.attempts == ["fail", "pass"]

    assert report.stage_count == 3
    assert report.pass1_count == 1
    assert report.pass3_count == 2
    assert report.pass1_rate == pytest.approx(1 / 3)
    assert report.pass3_rate == pytest.approx(2 / 3)


def test_reliability_groups_suffixed_keys(log):
    _stage_complete(log, "TEST", "pass")
    _stage_complete(log, "TEST:2", "fail")
    report = log.compute_reliability("s1")
    assert list(report.stages) == ["TEST"]
    assert report.stages["TEST"].attempts == ["pass", "fail"]


def test_reliability_without_stages(log):
    log.append("s1", "workflow:start", {})
    report = log.compute_reliability("s1")
    assert report.stage_count == 0
    assert report.pass1_rate is None
    assert report.pass3_rate is None
    assert log.compute_reliability("never-written").stages == {}
