from __future__ import annotations

import json
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Tuple, Union

from jamfhooks.core import log
from jamfhooks.core.errors import FixtureLoadError, FixtureNotFound

BUILTIN_SAMPLES = Path(__file__).resolve().parent.parent / "data" / "sample_jsons"

l = log.get("fixtures")


def load_all(directory: Union[str, Path]) -> Tuple[Dict[str, str], List[FixtureLoadError]]:
    """Read every ``<tag>.<ext>`` file in ``directory``.

    Returns the loaded ``{tag: raw_json}`` map and one FixtureLoadError per
    file that could not be read or is not valid JSON. A missing directory is
    reported as a single error.
    """
    root = Path(directory)
    loaded: Dict[str, str] = {}
    errors: List[FixtureLoadError] = []
    try:
        entries = sorted(p for p in root.iterdir() if p.is_file() and not p.name.startswith("."))
    except OSError as e:
        errors.append(FixtureLoadError(root.name, root, e))
        l.warning("fixture dir unreadable path=%s err=%s", root, e)
        return loaded, errors

    for path in entries:
        tag = path.stem
        try:
            text = path.read_text(encoding="utf-8")
            json.loads(text)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            errors.append(FixtureLoadError(tag, path, e))
            l.warning("fixture skipped tag=%s path=%s err=%s", tag, path, e)
            continue
        if tag in loaded:
            l.warning("duplicate fixture tag=%s, keeping %s", tag, path.name)
        loaded[tag] = text
    l.info("fixtures loaded dir=%s ok=%d failed=%d", root, len(loaded), len(errors))
    return loaded, errors


class FixtureStore:
    """Read-only sample payloads keyed by event tag (filename stem)."""

    def __init__(self, samples: Mapping[str, str] | None = None, errors: List[FixtureLoadError] | None = None):
        self._samples = MappingProxyType(dict(samples or {}))
        self.errors: Tuple[FixtureLoadError, ...] = tuple(errors or ())

    @classmethod
    def load(cls, directory: Union[str, Path]) -> "FixtureStore":
        samples, errors = load_all(directory)
        return cls(samples, errors)

    @classmethod
    def builtin(cls) -> "FixtureStore":
        return cls.load(BUILTIN_SAMPLES)

    def get(self, tag: object) -> str:
        # EventTypeTag is a str enum, so members and plain names both hash to the stem
        key = getattr(tag, "value", tag)
        try:
            return self._samples[key]
        except (KeyError, TypeError):
            raise FixtureNotFound(tag) from None

    def items(self):
        return self._samples.items()

    def tags(self) -> Tuple[str, ...]:
        return tuple(self._samples)

    def __contains__(self, tag: object) -> bool:
        return getattr(tag, "value", tag) in self._samples

    def __len__(self) -> int:
        return len(self._samples)
