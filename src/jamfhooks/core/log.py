from __future__ import annotations

import json
import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv

ROOT_LOGGER = "jamfhooks"

_configured = False


class JsonHandler(logging.StreamHandler):
    """One JSON object per record on stdout."""
    def __init__(self):
        super().__init__(stream=sys.stdout)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            obj = {
                "ts": record.created,
                "lvl": record.levelname,
                "name": record.name,
                "msg": record.getMessage(),
            }
            for k in ("filename", "lineno", "funcName"):
                obj[k] = getattr(record, k, None)
            if record.exc_info:
                obj["exc"] = self.format(record).splitlines()[-1]
            self.stream.write(json.dumps(obj, ensure_ascii=False) + "\n")
            self.flush()
        except Exception:  # pragma: no cover
            self.handleError(record)


def setup(level: Optional[str] = None, json_mode: Optional[bool] = None, *, force: bool = False) -> None:
    """Configure the root logger.
    - Loads .env, then reads LOG_LEVEL, LOG_JSON if args are None
    - If already configured, do nothing unless force=True
    """
    global _configured
    if _configured and not force:
        return

    load_dotenv()

    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    py_level = getattr(logging, lvl, None)
    if not isinstance(py_level, int):
        py_level = logging.INFO

    json_flag = json_mode if json_mode is not None else (os.getenv("LOG_JSON", "0") == "1")

    root = logging.getLogger()
    # avoid duplicate lines when pytest re-configures
    root.handlers.clear()
    root.setLevel(py_level)

    if json_flag:
        root.addHandler(JsonHandler())
    else:
        fmt = "[%(asctime)s] %(levelname)s %(name)s | %(message)s"
        handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=fmt))
        root.addHandler(handler)

    _configured = True


def get(name: str) -> logging.Logger:
    """Namespaced logger under ``jamfhooks``."""
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def set_level(level: str) -> None:
    """Adjust the root log level at runtime (e.g. during tests)."""
    lvl = getattr(logging, level.upper(), None)
    logging.getLogger().setLevel(lvl if isinstance(lvl, int) else logging.INFO)
