import pytest

from cadence.contracts import StageMode, StageStatus
from cadence.errors import (
    ConflictError,
    InvalidSessionIdError,
    InvalidTransformError,
    SessionNotFoundError,
    UnknownStageError,
    UnknownWorkflowError,
)
from cadence.persistence import FileSystemStateStore, InMemoryStateStore


@pytest.fixture(params=["filesystem", "inmemory"])
def make_store(request, tmp_path):
    def factory(**kwargs):
        if request.param == "filesystem":
            return FileSystemStateStore(str(tmp_path), **kwargs)
        return InMemoryStateStore(**kwargs)

    return factory


@pytest.fixture
def store(make_store):
    return make_store()


def test_initialize_expands_duplicate_stages(store):
    state = store.initialize("s1", "tdd", ["TEST", "DEV", "TEST"])

    assert list(state.stages) == ["TEST", "DEV", "TEST:2"]
    assert state.current_stage == "TEST"
    assert state.stages["TEST"].mode == StageMode.SPEC
    assert state.stages["TEST:2"].mode == StageMode.VERIFY
    assert state.stages["DEV"].mode is None
    assert all(s.status == StageStatus.PENDING for s in state.stages.values())
    assert state.revision == 1
    assert store.read("s1") == state


def test_initialize_records_feature_name(store):
    state = store.initialize("s1", "quick", ["DEV"], {"feature_name": "login-flow"})
    assert state.feature_name == "login-flow"
    assert store.read("s1").feature_name == "login-flow"


def test_initialize_rejects_unknown_definitions(store):
    with pytest.raises(UnknownWorkflowError):
        store.initialize("s1", "nope", ["DEV"])
    with pytest.raises(UnknownStageError):
        store.initialize("s1", "quick", ["DEV", "NOPE"])
    assert store.read("s1") is None


def test_reinitialize_overwrites_with_higher_revision(store):
    store.initialize("s1", "quick", ["DEV", "REVIEW"])
    store.mutate("s1", lambda s: s.model_copy(update={"fail_count": 2}))

    state = store.initialize("s1", "single", ["DEV"])
    assert state.workflow_type == "single"
    assert state.fail_count == 0
    assert list(state.stages) == ["DEV"]
    assert state.revision == 3


def test_read_is_soft_and_idempotent(store):
    assert store.read("missing") is None
    store.initialize("s1", "quick", ["DEV", "REVIEW", "TEST", "RETRO"])
    assert store.read("s1") == store.read("s1")


def test_mutate_persists_and_bumps_revision(store):
    store.initialize("s1", "quick", ["DEV", "REVIEW"])

    def bump(state):
        state.fail_count += 1
        return state

    updated = store.mutate("s1", bump)
    assert updated.fail_count == 1
    assert updated.revision == 2
    assert store.read("s1").fail_count == 1


def test_mutate_unknown_session(store):
    with pytest.raises(SessionNotFoundError) as excinfo:
        store.mutate("missing", lambda s: s)
    assert excinfo.value.session_id == "missing"
    assert isinstance(excinfo.value, LookupError)


def test_mutate_rejects_transform_without_state(store):
    store.initialize("s1", "quick", ["DEV"])
    with pytest.raises(InvalidTransformError):
        store.mutate("s1", lambda s: None)
    assert store.read("s1").revision == 1


def test_mutate_conflict_is_retried(make_store):
    store = make_store(max_conflict_retries=1)
    store.initialize("s1", "quick", ["DEV"])
    calls = []

    def interfering(state):
        calls.append(state.revision)
        if len(calls) == 1:
            store.mutate("s1", lambda s: s.model_copy(update={"reject_count": 1}))
        state.fail_count += 1
        return state

    updated = store.mutate("s1", interfering)
    assert calls == [1, 2]
    assert updated.fail_count == 1
    assert updated.reject_count == 1
    assert updated.revision == 3


def test_mutate_conflict_exhausts_retries(make_store):
    store = make_store(max_conflict_retries=0)
    store.initialize("s1", "quick", ["DEV"])

    def always_interfering(state):
        store.mutate("s1", lambda s: s.model_copy(update={"reject_count": s.reject_count + 1}))
        return state

    with pytest.raises(ConflictError):
        store.mutate("s1", always_interfering)


def test_loop_document_is_created_lazily(store):
    assert store.read_loop("s1") is None

    def advance(loop):
        loop.iteration += 1
        return loop

    loop = store.mutate_loop("s1", advance)
    assert loop.iteration == 1
    assert loop.revision == 1
    assert store.mutate_loop("s1", advance).iteration == 2
    assert store.read_loop("s1").revision == 2


def test_list_sessions(store):
    store.initialize("b", "single", ["DEV"])
    store.initialize("a", "single", ["DEV"])
    store.mutate_loop("c", lambda loop: loop)
    assert store.list_sessions() == ["a", "b"]


@pytest.mark.parametrize("session_id", ["../escape", "", "a/b", ".hidden"])
def test_invalid_session_ids(store, session_id):
    with pytest.raises(InvalidSessionIdError):
        store.read(session_id)


def test_filesystem_layout(tmp_path):
    store = FileSystemStateStore(str(tmp_path))
    store.initialize("s1", "quick", ["DEV"])
    store.mutate_loop("s1", lambda loop: loop)

    session_dir = tmp_path / "sessions" / "s1"
    assert sorted(p.name for p in session_dir.iterdir()) == [".lock", "loop.json", "workflow.json"]
    assert '"revision": 1' in (session_dir / "workflow.json").read_text()


def test_filesystem_state_survives_new_store(tmp_path):
    FileSystemStateStore(str(tmp_path)).initialize("s1", "quick", ["DEV", "REVIEW"])
    reopened = FileSystemStateStore(str(tmp_path))
    assert list(reopened.read("s1").stages) == ["DEV", "REVIEW"]
