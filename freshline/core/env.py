from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator, Tuple


def load_env(path: Path | None = None) -> None:
    """
    Merge ``KEY=value`` pairs from dotenv files into ``os.environ``.

    Files are read in order:
    1. ``.env`` next to the project root (or ``path`` when given)
    2. ``.env.local`` beside it, for machine-specific overrides

    Variables exported by the shell are never replaced. ``.env.local`` may
    override what ``.env`` set, ``.env`` never overrides anything.
    """
    shell_keys = frozenset(os.environ)

    base = path or _default_env_path()
    if base.is_file():
        for key, value in _read_pairs(base):
            os.environ.setdefault(key, value)

    if path is not None:
        return

    local = base.with_name(".env.local")
    if local.is_file():
        for key, value in _read_pairs(local):
            if key in shell_keys:
                continue
            os.environ[key] = value


def _read_pairs(env_path: Path) -> Iterator[Tuple[str, str]]:
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        yield key, _unquote(value.strip())


def _default_env_path() -> Path:
    return Path(__file__).resolve().parents[2] / ".env"


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


__all__ = ["load_env"]
