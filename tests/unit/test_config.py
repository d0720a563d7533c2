"""Tests for configuration loading."""

from cadence.config import CadenceConfig, StoreConfig, load_config
from cadence.persistence import FileSystemStateStore, InMemoryStateStore, get_store
from cadence.timeline import FileEventLog, InMemoryEventLog, get_event_log


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "cadence.yaml"
    config_path.write_text(
        """
home: /srv/cadence
store:
  backend: inmemory
  max_conflict_retries: 2
timeline:
  max_events: 50
  trim_interval: 10
"""
    )
    monkeypatch.setenv("CADENCE_CONFIG", str(config_path))
    monkeypatch.delenv("CADENCE_HOME", raising=False)

    config = load_config()
    assert config.home == "/srv/cadence"
    assert config.store.backend == "inmemory"
    assert config.store.max_conflict_retries == 2
    assert config.store.lock_timeout == 5.0
    assert config.timeline.max_events == 50
    assert config.timeline.trim_interval == 10


def test_cadence_home_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "cadence.yaml"
    config_path.write_text("home: /srv/cadence\n")
    monkeypatch.setenv("CADENCE_HOME", str(tmp_path / "elsewhere"))

    config = load_config(str(config_path))
    assert config.home == str(tmp_path / "elsewhere")


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CADENCE_CONFIG", raising=False)
    monkeypatch.delenv("CADENCE_HOME", raising=False)

    config = load_config()
    assert config.home == "~/.cadence"
    assert config.store.backend == "filesystem"
    assert config.timeline.max_events == 2000
    assert config.timeline.trim_interval == 100
    assert config.registry_path is None


def test_get_store_uses_config(tmp_path):
    fs_config = CadenceConfig(home=str(tmp_path))
    store = get_store(fs_config)
    assert isinstance(store, FileSystemStateStore)
    assert store.paths.home == tmp_path

    mem_config = CadenceConfig(store=StoreConfig(backend="inmemory", max_conflict_retries=1))
    store = get_store(mem_config)
    assert isinstance(store, InMemoryStateStore)
    assert store.max_conflict_retries == 1


def test_get_event_log_follows_store_backend(tmp_path):
    log = get_event_log(CadenceConfig(home=str(tmp_path)))
    assert isinstance(log, FileEventLog)

    log = get_event_log(CadenceConfig(store=StoreConfig(backend="inmemory")))
    assert isinstance(log, InMemoryEventLog)
    assert log.max_events == 2000
