"""Error taxonomy.

Parse-time errors (``ParseError`` subclasses) reject an event before any
handler runs. Startup errors (fixture/handler loading) are collected, not
raised. ``HandlerExecutionError`` only ever appears inside a dispatch report.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class JamfHooksError(Exception):
    """Base class for every error raised by this package."""


# --------- parse time ---------

class ParseError(JamfHooksError):
    reason = "parse_error"


class UnknownEventType(ParseError):
    reason = "unknown_event_type"

    def __init__(self, tag: object):
        self.tag = tag
        super().__init__(f"unknown event type: {tag!r}")


class MalformedPayload(ParseError):
    reason = "malformed_payload"


class SchemaViolation(ParseError):
    reason = "schema_violation"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.detail = reason
        super().__init__(f"{field}: {reason}")


# --------- startup ---------

class FixtureLoadError(JamfHooksError):
    def __init__(self, tag: str, path: Path, cause: BaseException):
        self.tag = tag
        self.path = path
        self.cause = cause
        super().__init__(f"fixture {tag!r} ({path}): {cause}")


class FixtureNotFound(JamfHooksError, KeyError):
    def __init__(self, tag: object):
        self.tag = tag
        super().__init__(f"no fixture for {tag!r}")

    def __str__(self) -> str:
        return self.args[0]


class HandlerLoadError(JamfHooksError):
    def __init__(self, identity: str, cause: BaseException):
        self.identity = identity
        self.cause = cause
        super().__init__(f"handler {identity!r} failed to load: {cause}")


class RegistryFrozen(JamfHooksError):
    pass


class ConfigError(JamfHooksError):
    pass


# --------- dispatch time ---------

class HandlerExecutionError(JamfHooksError):
    def __init__(self, identity: str, cause: BaseException):
        self.identity = identity
        self.cause = cause
        super().__init__(f"handler {identity!r} failed: {cause!r}")


class HandlerTimeout(JamfHooksError):
    def __init__(self, identity: str, timeout: float):
        self.identity = identity
        self.timeout = timeout
        super().__init__(f"handler {identity!r} exceeded {timeout:.3f}s")


class ExternalHandlerFailed(JamfHooksError):
    def __init__(self, command: str, returncode: int, stderr: Optional[str] = None):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        msg = f"{command} exited with status {returncode}"
        if stderr:
            msg += f": {stderr.strip()}"
        super().__init__(msg)
