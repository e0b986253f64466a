"""Packaged agent prompt templates, overridable per project."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

_DIR = Path(__file__).parent
_cache: dict[str, str] = {}


def load(name: str, override_dir: Optional[Path] = None) -> str:
    """Return the template ``name`` (e.g. ``coding.md``).

    A file with the same name in ``override_dir`` wins over the packaged copy
    and is read fresh each call, so edits apply to the next agent run.
    """
    if override_dir is not None:
        custom = override_dir / name
        if custom.is_file():
            return custom.read_text(encoding="utf-8").strip()
    if name not in _cache:
        _cache[name] = (_DIR / name).read_text(encoding="utf-8").strip()
    return _cache[name]
