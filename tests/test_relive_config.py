import pytest

from relive.relive_config import CONFIG_FILENAME, ReliveConfig, load_config

ENV_NAMES = ["RELIVE_POLL_INTERVAL", "RELIVE_WATCH", "RELIVE_MODE", "RELIVE_PROJECT_ROOT", "RELIVE_LOG_LEVEL"]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path):
    config = load_config(str(tmp_path))
    assert config.poll_interval == 0.1
    assert config.watch is True
    assert config.mode == "auto"
    assert config.project_root == str(tmp_path)
    assert config.log_level == "WARNING"


def test_yaml_file(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text(
        "poll_interval: 0.5\nwatch: false\nmode: async\nlog_level: debug\nunknown: 1\n")
    config = load_config(str(tmp_path))
    assert config.poll_interval == 0.5
    assert config.watch is False
    assert config.mode == "async"
    assert config.log_level == "DEBUG"


def test_environment_overrides_file(tmp_path, monkeypatch):
    (tmp_path / CONFIG_FILENAME).write_text("watch: false\nmode: async\n")
    monkeypatch.setenv("RELIVE_WATCH", "yes")
    monkeypatch.setenv("RELIVE_MODE", "SYNC")
    monkeypatch.setenv("RELIVE_POLL_INTERVAL", "0.25")
    config = load_config(str(tmp_path))
    assert config.watch is True
    assert config.mode == "sync"
    assert config.poll_interval == 0.25


def test_bad_number_in_environment_keeps_default(tmp_path, monkeypatch):
    monkeypatch.setenv("RELIVE_POLL_INTERVAL", "soon")
    assert load_config(str(tmp_path)).poll_interval == 0.1


def test_invalid_values_are_rejected(tmp_path):
    with pytest.raises(ValueError):
        ReliveConfig(mode="sometimes")
    with pytest.raises(ValueError):
        ReliveConfig(poll_interval=0)
    (tmp_path / CONFIG_FILENAME).write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_config(str(tmp_path))
