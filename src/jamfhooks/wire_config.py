"""Build a ready-to-use receiver from a YAML config file.

Example ``receiver.yaml``::

    schemas: builtin              # or path to a schema table
    fixtures: builtin             # or a directory, or null
    handlers:
      dirs: [./handlers]
      manifest: ["mypkg.hooks:build"]
    dispatch:
      handler_timeout: 30         # seconds, null = unbounded
      timeout_policy: skip        # skip | abort
    archive:
      out_dir: ./data/payloads    # null disables archiving
    workers: 4

Relative paths are resolved against the config file's directory.
Environment (``.env`` is loaded first) overrides:
``JAMFHOOKS_HANDLER_TIMEOUT``, ``JAMFHOOKS_TIMEOUT_POLICY``,
``JAMFHOOKS_HANDLER_DIRS`` (``os.pathsep`` separated).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from jamfhooks.adapters.storage import PayloadArchive
from jamfhooks.core import log
from jamfhooks.core.dispatcher import DispatchConfig, Dispatcher
from jamfhooks.core.errors import ConfigError, FixtureLoadError, HandlerLoadError
from jamfhooks.core.fixtures import FixtureStore
from jamfhooks.core.handlers import HandlerRegistry
from jamfhooks.core.parser import EventParser
from jamfhooks.core.schema import SchemaRegistry
from jamfhooks.core.workers import DispatchWorkers, ReceiptCallback
from jamfhooks.service import WebhookService

l = log.get("wire_config")

BUILTIN = "builtin"


class HandlersConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    dirs: List[Path] = Field(default_factory=list)
    manifest: List[str] = Field(default_factory=list)


class ArchiveConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    out_dir: Optional[Path] = None   # None disables archiving


class ReceiverConfig(BaseModel):
    """Validated ``receiver.yaml``; paths are absolute once loaded."""
    model_config = ConfigDict(extra="ignore")

    schemas: Union[Literal["builtin"], Path] = BUILTIN
    fixtures: Union[Literal["builtin"], Path, None] = BUILTIN
    handlers: HandlersConfig = Field(default_factory=HandlersConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    workers: int = Field(default=4, gt=0)

    @property
    def handler_dirs(self) -> List[Path]:
        return self.handlers.dirs

    @property
    def manifest(self) -> List[str]:
        return self.handlers.manifest

    @property
    def archive_dir(self) -> Optional[Path]:
        return self.archive.out_dir


@dataclass
class StartupReport:
    schemas: SchemaRegistry
    handlers: HandlerRegistry
    fixtures: Optional[FixtureStore] = None
    archive: Optional[PayloadArchive] = None
    fixture_errors: List[FixtureLoadError] = field(default_factory=list)
    handler_errors: List[HandlerLoadError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.fixture_errors and not self.handler_errors


def _path(base: Path, value: Any) -> Path:
    p = Path(str(value)).expanduser()
    return p if p.is_absolute() else base / p


def _env_timeout(raw: str) -> Optional[str]:
    if raw.strip().lower() in ("", "none", "null", "0"):
        return None
    return raw


def _override(data: Dict[str, Any], section: str, key: str, value: Any) -> None:
    # a non-mapping section is left alone for validation to reject
    current = data.get(section)
    if current is None:
        current = {}
    if isinstance(current, Mapping):
        data[section] = {**current, key: value}


def _apply_env(data: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(data)
    if "JAMFHOOKS_HANDLER_TIMEOUT" in os.environ:
        _override(data, "dispatch", "handler_timeout", _env_timeout(os.environ["JAMFHOOKS_HANDLER_TIMEOUT"]))
    if os.getenv("JAMFHOOKS_TIMEOUT_POLICY"):
        _override(data, "dispatch", "timeout_policy", os.environ["JAMFHOOKS_TIMEOUT_POLICY"])
    if os.getenv("JAMFHOOKS_HANDLER_DIRS"):
        dirs = [p for p in os.environ["JAMFHOOKS_HANDLER_DIRS"].split(os.pathsep) if p]
        _override(data, "handlers", "dirs", dirs)
    return data


def load_config(yaml_path: Union[str, Path]) -> ReceiverConfig:
    load_dotenv()
    path = Path(yaml_path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must be a mapping")
    return config_from_dict(data, base=path.resolve().parent)


def config_from_dict(data: Dict[str, Any], base: Optional[Path] = None) -> ReceiverConfig:
    base = base or Path.cwd()
    # empty YAML sections mean defaults; `fixtures: null` disables fixtures
    data = {k: v for k, v in data.items() if v is not None or k == "fixtures"}
    try:
        cfg = ReceiverConfig.model_validate(_apply_env(data))
    except ValidationError as e:
        raise ConfigError(f"invalid receiver config: {e}") from e

    if cfg.schemas != BUILTIN:
        cfg.schemas = _path(base, cfg.schemas)
    if cfg.fixtures not in (None, BUILTIN):
        cfg.fixtures = _path(base, cfg.fixtures)
    cfg.handlers.dirs = [_path(base, d) for d in cfg.handlers.dirs]
    if cfg.archive.out_dir is not None:
        cfg.archive.out_dir = _path(base, cfg.archive.out_dir)
    return cfg


def build(cfg: ReceiverConfig) -> Tuple[WebhookService, StartupReport]:
    """Assemble frozen registries, parser, dispatcher and service.

    Fixture and handler load failures are collected in the report; only a
    broken schema table (``ConfigError``) stops startup.
    """
    schemas = SchemaRegistry.load_builtin() if cfg.schemas == BUILTIN else SchemaRegistry.from_yaml(cfg.schemas)
    schemas.freeze()

    handlers = HandlerRegistry()
    report = StartupReport(schemas=schemas, handlers=handlers)
    for d in cfg.handler_dirs:
        report.handler_errors += handlers.load_directory(d, external_timeout=cfg.dispatch.handler_timeout)
    if cfg.manifest:
        report.handler_errors += handlers.load_manifest(cfg.manifest)
    handlers.freeze()

    if cfg.fixtures is not None:
        store = FixtureStore.builtin() if cfg.fixtures == BUILTIN else FixtureStore.load(cfg.fixtures)
        report.fixtures = store
        report.fixture_errors = list(store.errors)

    if cfg.archive_dir is not None:
        report.archive = PayloadArchive(cfg.archive_dir)
        report.archive.start()

    service = WebhookService(EventParser(schemas), Dispatcher(handlers, cfg.dispatch), sink=report.archive)
    l.info("receiver ready schemas=%d handlers=%d handler_errors=%d fixture_errors=%d",
           len(schemas), len(handlers), len(report.handler_errors), len(report.fixture_errors))
    return service, report


def build_from_yaml(yaml_path: Union[str, Path]) -> Tuple[WebhookService, StartupReport]:
    return build(load_config(yaml_path))


def build_workers(service: WebhookService, cfg: ReceiverConfig,
                  on_receipt: Optional[ReceiptCallback] = None) -> DispatchWorkers:
    return DispatchWorkers(service, workers=cfg.workers, on_receipt=on_receipt)
