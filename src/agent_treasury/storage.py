"""Owner-only file helpers for proposal and audit state on local disk."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path


_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")

DIR_MODE = 0o700
FILE_MODE = 0o600


def ensure_private_dir(path: Path) -> None:
    path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    os.chmod(path, DIR_MODE)


def ensure_private_file(path: Path) -> None:
    path.touch(mode=FILE_MODE, exist_ok=True)
    os.chmod(path, FILE_MODE)


def safe_child_path(base_dir: Path, identifier: str, suffix: str) -> Path:
    """Map ``identifier`` to a file directly inside ``base_dir``.

    Characters outside ``[a-zA-Z0-9._-]`` become ``_``; anything that still
    resolves outside ``base_dir`` (``..``, empty names) raises ValueError.
    """
    name = _UNSAFE_CHARS.sub("_", identifier)
    base = base_dir.resolve()
    candidate = (base / f"{name}{suffix}").resolve()
    if not name.strip(".") or candidate.parent != base:
        raise ValueError(f"Unsafe path for identifier: {identifier}")
    return candidate


def atomic_write_json(path: Path, payload: dict) -> None:
    """Replace ``path`` with ``payload`` so readers never see a partial file."""
    staging = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    fd = os.open(staging, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(staging, path)
