# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""File helpers for generated artifacts.

Artifacts land inside the user's repository, so writes refuse to follow
symlinks, go through a temp file in the same directory, and are renamed into
place atomically with owner-only permissions.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

UNTRUSTED_BANNER = (
    "<!-- WARNING: GENERATED FILE: UNTRUSTED CONTENT -->\n"
    "<!-- This file contains AI-generated content. Review carefully before clicking links. -->\n\n"
    "> **SECURITY NOTICE**\n"
    "> This is an AI-generated report. Review all links and recommendations before use.\n\n"
)


def write_text_atomic(path: str | Path, data: str, mode: int = 0o600) -> Path:
    """Atomically write ``data`` to ``path`` without following symlinks.

    Raises:
        OSError: If the target is a symlink or the write fails
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    if target.is_symlink():
        raise OSError(
            f"Refusing to write to symlink: {target}. Delete the symlink and try again."
        )

    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.tmp-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, mode)
        if target.is_symlink():
            raise OSError(f"Target became a symlink during write: {target}")
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return target


def write_json_atomic(path: str | Path, data: Any, mode: int = 0o600) -> Path:
    return write_text_atomic(path, json.dumps(data, indent=2) + "\n", mode=mode)


def read_json(path: str | Path) -> Optional[Any]:
    """Read a JSON file, returning None when it is missing."""
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None


def ensure_within(base: str | Path, target: str | Path) -> Path:
    """Resolve ``target`` and require it to stay under ``base``.

    Raises:
        ValueError: If the resolved path escapes ``base``
    """
    base_resolved = Path(base).resolve()
    resolved = Path(target).resolve()
    if resolved != base_resolved and base_resolved not in resolved.parents:
        raise ValueError(f"Path escapes {base_resolved}: {resolved}")
    return resolved


__all__ = [
    "UNTRUSTED_BANNER",
    "ensure_within",
    "read_json",
    "write_json_atomic",
    "write_text_atomic",
]
