# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/fingerprint.py

"""
Change signatures for tasks.

A signature is the hex SHA-256 of a task's tracked inputs. Identical inputs
give identical signatures across runs and machines; any byte change in a
tracked file, or any rename, addition or removal inside a tracked
directory, gives a different one.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Union

from .errors import FingerprintError

Signature = str

_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class FileInput:
    """Track the byte content of one file."""

    path: Path


@dataclass(frozen=True)
class DirectoryInput:
    """Track a whole directory tree."""

    path: Path


Trigger = Union[str, FileInput, DirectoryInput]


def hash_file(path: str | Path) -> Signature:
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK), b""):
                digest.update(chunk)
    except OSError as e:
        raise FingerprintError(f"cannot read {path}: {e}") from e
    return digest.hexdigest()


def hash_directory(path: str | Path) -> Signature:
    """
    Hash a directory tree.

    Entries are visited in sorted name order at every level; each contributes
    ``"<name>:<hash>"`` where the hash is the child tree's signature for a
    directory and the content hash for a file.
    """
    path = Path(path)
    try:
        names = sorted(os.listdir(path))
    except OSError as e:
        raise FingerprintError(f"cannot list {path}: {e}") from e

    parts = []
    for name in names:
        child = path / name
        if child.is_dir():
            parts.append(f"{name}:{hash_directory(child)}")
        else:
            parts.append(f"{name}:{hash_file(child)}")

    return hashlib.sha256("".join(parts).encode("utf-8")).hexdigest()


def hash_values(*values: str) -> Signature:
    """Hash an ordered tuple of strings; each value is length-prefixed."""
    digest = hashlib.sha256()
    for value in values:
        data = str(value).encode("utf-8")
        digest.update(f"{len(data)}:".encode("ascii"))
        digest.update(data)
    return digest.hexdigest()


def compute_signature(triggers: Iterable[Trigger]) -> Signature:
    resolved = []
    for t in triggers:
        if isinstance(t, FileInput):
            resolved.append(f"file:{hash_file(t.path)}")
        elif isinstance(t, DirectoryInput):
            resolved.append(f"dir:{hash_directory(t.path)}")
        else:
            resolved.append(f"value:{t}")
    return hash_values(*resolved)
