import textwrap
from pathlib import Path

import pytest

from jamfhooks.core.contracts import DispatchStatus
from jamfhooks.core.dispatcher import TimeoutPolicy
from jamfhooks.core.errors import ConfigError, RegistryFrozen
from jamfhooks.wire_config import build, build_from_yaml, build_workers, config_from_dict, load_config

_ENV = ("JAMFHOOKS_HANDLER_TIMEOUT", "JAMFHOOKS_TIMEOUT_POLICY", "JAMFHOOKS_HANDLER_DIRS")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for k in _ENV:
        monkeypatch.delenv(k, raising=False)


@pytest.fixture
def receiver_dir(tmp_path: Path) -> Path:
    hd = tmp_path / "handlers"
    hd.mkdir()
    (hd / "ComputerCheckIn-ok.py").write_text("def handle(event):\n    pass\n", encoding="utf-8")
    (hd / "ComputerCheckIn-broken.py").write_text("def handle(event:\n", encoding="utf-8")
    (tmp_path / "receiver.yaml").write_text(textwrap.dedent("""
        schemas: builtin
        fixtures: builtin
        handlers:
          dirs: [handlers]
        dispatch:
          handler_timeout: 5
          timeout_policy: abort
        archive:
          out_dir: archive
        workers: 2
    """), encoding="utf-8")
    return tmp_path


def test_load_config_resolves_relative_paths(receiver_dir):
    cfg = load_config(receiver_dir / "receiver.yaml")
    assert cfg.handler_dirs == [receiver_dir.resolve() / "handlers"]
    assert cfg.archive_dir == receiver_dir.resolve() / "archive"
    assert cfg.dispatch.handler_timeout == 5.0
    assert cfg.dispatch.timeout_policy is TimeoutPolicy.ABORT
    assert cfg.workers == 2


def test_build_from_yaml(receiver_dir, builtin_fixtures):
    service, report = build_from_yaml(receiver_dir / "receiver.yaml")
    try:
        assert not report.ok
        assert [e.identity for e in report.handler_errors] == ["ComputerCheckIn-broken.py"]
        assert report.fixture_errors == []
        assert len(report.fixtures) == len(builtin_fixtures)

        r = service.receive("ComputerCheckIn", builtin_fixtures.get("ComputerCheckIn"))
        assert r.report.status is DispatchStatus.ALL_SUCCEEDED
        assert [o.identity for o in r.report.outcomes] == ["ComputerCheckIn-ok.py"]

        with pytest.raises(RegistryFrozen):
            report.handlers.register("PushSent", lambda ev: None)
        with pytest.raises(RegistryFrozen):
            report.schemas.register("PushSent", [])
    finally:
        report.archive.stop()
    assert list((receiver_dir / "archive" / "ComputerCheckIn").glob("*.json"))


def test_env_overrides(receiver_dir, monkeypatch, tmp_path):
    other = tmp_path / "other_handlers"
    other.mkdir()
    monkeypatch.setenv("JAMFHOOKS_HANDLER_TIMEOUT", "none")
    monkeypatch.setenv("JAMFHOOKS_TIMEOUT_POLICY", "skip")
    monkeypatch.setenv("JAMFHOOKS_HANDLER_DIRS", str(other))

    cfg = load_config(receiver_dir / "receiver.yaml")

    assert cfg.dispatch.handler_timeout is None
    assert cfg.dispatch.timeout_policy is TimeoutPolicy.SKIP
    assert cfg.handler_dirs == [other]


def test_defaults_and_manifest():
    cfg = config_from_dict({"fixtures": None, "handlers": {"manifest": ["jamfhooks.core.handlers:handler_for"]}})
    service, report = build(cfg)
    # handler_for is a decorator factory, not a handler: reported, not fatal
    assert len(report.handler_errors) == 1
    assert report.fixtures is None and report.archive is None
    assert service.dispatcher.config.handler_timeout is None
    assert build_workers(service, cfg).n == 4


@pytest.mark.parametrize("data", [
    {"dispatch": {"timeout_policy": "later"}},
    {"dispatch": {"handler_timeout": -3}},
    {"workers": 0},
    {"workers": "many"},
    {"handlers": ["not", "a", "mapping"]},
    {"handlers": {"dirs": "handlers"}},
    {"dispatch": ["skip"]},
    {"dispatch": {"handler_timeout": "soon"}},
])
def test_invalid_config(data):
    with pytest.raises(ConfigError):
        config_from_dict(data)


def test_unreadable_or_bad_files(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml")
    (tmp_path / "list.yaml").write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(tmp_path / "list.yaml")
    (tmp_path / "schemas.yaml").write_text("NotAnEvent: []\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        build(config_from_dict({"schemas": "schemas.yaml", "fixtures": None}, base=tmp_path))


def test_empty_sections_fall_back_to_defaults(tmp_path):
    cfg = config_from_dict({"handlers": None, "dispatch": None, "archive": None, "schemas": None}, base=tmp_path)
    assert cfg.schemas == "builtin" and cfg.fixtures == "builtin"
    assert cfg.handler_dirs == [] and cfg.manifest == []
    assert cfg.archive_dir is None
    assert cfg.dispatch.timeout_policy is TimeoutPolicy.SKIP


def test_env_override_is_validated(monkeypatch):
    monkeypatch.setenv("JAMFHOOKS_TIMEOUT_POLICY", "later")
    with pytest.raises(ConfigError):
        config_from_dict({})
    monkeypatch.setenv("JAMFHOOKS_TIMEOUT_POLICY", "abort")
    monkeypatch.setenv("JAMFHOOKS_HANDLER_TIMEOUT", "2.5")
    cfg = config_from_dict({"dispatch": {"handler_timeout": 30}})
    assert cfg.dispatch.handler_timeout == 2.5
    assert cfg.dispatch.timeout_policy is TimeoutPolicy.ABORT
