import json
import os
import sys
import textwrap
from pathlib import Path

import pytest

from jamfhooks.core.contracts import EventTypeTag
from jamfhooks.core.errors import HandlerLoadError, RegistryFrozen, UnknownEventType
from jamfhooks.core.handlers import ExternalHandler, HandlerRegistry


def test_register_preserves_order_and_allows_duplicates(registry):
    def a(ev): pass
    def b(ev): pass

    registry.register("ComputerAdded", a)
    registry.register(EventTypeTag.ComputerAdded, b)
    registry.register("ComputerAdded", a)

    regs = registry.handlers_for("ComputerAdded")
    assert [r.handler for r in regs] == [a, b, a]
    assert regs[0].identity.endswith("a")
    assert registry.handlers_for(EventTypeTag.PushSent) == ()
    assert registry.handlers_for("NotAnEvent") == ()
    assert len(registry) == 3


def test_register_rejects_unknown_tag_and_non_callable(registry):
    with pytest.raises(UnknownEventType):
        registry.register("NotAnEvent", lambda ev: None)
    with pytest.raises(TypeError):
        registry.register("PushSent", "not callable")


def test_handles_decorator(registry):
    @registry.handles("JSSStartup", EventTypeTag.JSSShutdown)
    def lifecycle(ev):
        return ev

    assert registry.handlers_for("JSSStartup")[0].handler is lifecycle
    assert registry.handlers_for("JSSShutdown")[0].handler is lifecycle
    assert set(registry.tags()) == {EventTypeTag.JSSStartup, EventTypeTag.JSSShutdown}


def test_freeze(registry):
    registry.freeze()
    with pytest.raises(RegistryFrozen):
        registry.register("PushSent", lambda ev: None)


# ---- manifest ----

MANIFEST_MODULE = '''
from jamfhooks.core.handlers import handler_for

CALLS = []

@handler_for("ComputerCheckIn")
def on_checkin(event):
    CALLS.append(("fn", event.type.value))

class Notifier:
    tags = ("ComputerCheckIn", "ComputerAdded")
    name = "notifier"

    def handle(self, event):
        CALLS.append(("obj", event.type.value))

def build():
    return [Notifier(), on_checkin]

class BadTags:
    tags = ("NotAnEvent",)
    def handle(self, event):
        pass

not_a_handler = 42
'''


@pytest.fixture
def manifest_module(tmp_path, monkeypatch):
    (tmp_path / "jh_manifest_demo.py").write_text(MANIFEST_MODULE, encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    yield "jh_manifest_demo"
    sys.modules.pop("jh_manifest_demo", None)


def test_load_manifest(registry, manifest_module):
    errors = registry.load_handlers([
        f"{manifest_module}:on_checkin",
        f"{manifest_module}:build",
        f"{manifest_module}:BadTags",
        f"{manifest_module}:not_a_handler",
        "jh_missing_module:x",
    ])

    idents = [r.identity for r in registry.handlers_for("ComputerCheckIn")]
    assert idents == [f"{manifest_module}:on_checkin", "notifier", f"{manifest_module}:build[1]"]
    assert [r.identity for r in registry.handlers_for("ComputerAdded")] == ["notifier"]

    assert all(isinstance(e, HandlerLoadError) for e in errors)
    failed = {e.identity for e in errors}
    assert f"{manifest_module}:not_a_handler" in failed
    assert "jh_missing_module:x" in failed
    assert len(errors) == 3


def test_manifest_accepts_objects(registry):
    class Hook:
        tags = ["PushSent"]

        def handle(self, event):
            pass

    hook = Hook()
    assert registry.load_manifest([hook]) == []
    assert registry.handlers_for("PushSent")[0].handler == hook.handle


# ---- handler directory ----

def _write(path: Path, text: str, mode: int = 0o644) -> Path:
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    os.chmod(path, mode)
    return path


@pytest.fixture
def handler_dir(tmp_path):
    d = tmp_path / "handlers"
    d.mkdir()
    out = tmp_path / "out"
    out.mkdir()
    target = str(out / "checkin.txt")
    _write(d / "ComputerCheckIn-record.py", f"""
        from pathlib import Path

        def handle(event):
            Path({target!r}).write_text(event.fields["udid"])
    """)
    _write(d / "multi.py", """
        EVENT_TYPES = ["MobileDeviceEnrolled", "MobileDeviceUnEnrolled"]

        def handle(event):
            pass
    """)
    _write(d / "Broken-syntax.py", "def handle(event:\n")
    _write(d / "ComputerAdded-nohandle.py", "X = 1\n")
    _write(d / "NotAnEvent-x.py", "def handle(event):\n    pass\n")
    _write(d / "README.txt", "docs\n")
    (d / "__pycache__").mkdir()
    return d, out


def test_load_directory(registry, handler_dir):
    d, _ = handler_dir
    errors = registry.load_handlers(d)

    assert [r.identity for r in registry.handlers_for("ComputerCheckIn")] == ["ComputerCheckIn-record.py"]
    assert [r.identity for r in registry.handlers_for("MobileDeviceEnrolled")] == ["multi.py"]
    assert [r.identity for r in registry.handlers_for("MobileDeviceUnEnrolled")] == ["multi.py"]
    assert registry.handlers_for("ComputerAdded") == ()

    assert sorted(e.identity for e in errors) == [
        "Broken-syntax.py", "ComputerAdded-nohandle.py", "NotAnEvent-x.py", "README.txt",
    ]
    syntax = next(e for e in errors if e.identity == "Broken-syntax.py")
    assert isinstance(syntax.cause, SyntaxError)


def test_directory_handler_runs(registry, handler_dir, parser, builtin_fixtures):
    d, out = handler_dir
    registry.load_directory(d)
    ev = parser.parse("ComputerCheckIn", builtin_fixtures.get("ComputerCheckIn"))
    registry.handlers_for("ComputerCheckIn")[0].handler(ev)
    assert (out / "checkin.txt").read_text() == ev.fields["udid"]


def test_missing_directory_reported(registry, tmp_path):
    errors = registry.load_directory(tmp_path / "absent")
    assert len(errors) == 1 and len(registry) == 0


@pytest.mark.skipif(sys.platform == "win32", reason="shell script handler")
def test_external_handler_gets_raw_json_on_stdin(registry, tmp_path, parser, builtin_fixtures):
    d = tmp_path / "handlers"
    d.mkdir()
    dump = tmp_path / "stdin.json"
    _write(d / "PushSent-dump.sh", f"#!/bin/sh\ncat > {dump}\n", mode=0o755)

    assert registry.load_directory(d) == []
    reg = registry.handlers_for("PushSent")[0]
    assert isinstance(reg.handler, ExternalHandler)
    assert reg.identity == "PushSent-dump.sh"

    ev = parser.parse("PushSent", builtin_fixtures.get("PushSent"))
    reg.handler(ev)
    assert json.loads(dump.read_text()) == json.loads(ev.raw_json)
