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

"""Administrative operations: connect, model selection and listings."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from keyring.errors import KeyringError

from shipspec.config.secrets import OPENROUTER_API_KEY, TAVILY_API_KEY, SecretsStore
from shipspec.config.settings import (
    OUTPUTS_DIR,
    PROJECT_DIR,
    PROJECT_FILE,
    SUPPORTED_CHAT_MODELS,
    ShipSpecSettings,
    find_project_root,
    resolve_project_root,
    write_settings_value,
)
from shipspec.core.errors import ShipSpecRuntimeError, ShipSpecUsageError
from shipspec.utils.files import read_json, write_json_atomic

logger = logging.getLogger(__name__)

PROJECT_SCHEMA_VERSION = 1
IDEA_PREVIEW_LENGTH = 100


# =============================================================================
# connect
# =============================================================================


def _ensure_gitignore(project_root: Path) -> None:
    path = project_root / ".gitignore"
    try:
        content = path.read_text(encoding="utf-8") if path.exists() else ""
        if PROJECT_DIR in content:
            return
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"\n# Ship Spec\n{PROJECT_DIR}/\n")
    except OSError as e:
        logger.warning(f"Could not update .gitignore ({e}). Please add {PROJECT_DIR}/ manually.")


def connect(
    openrouter_key: str,
    tavily_key: Optional[str] = None,
    cwd: Optional[Path] = None,
    secrets: Optional[SecretsStore] = None,
) -> dict[str, Any]:
    """Store API keys and initialize ``.ship-spec/`` in the project.

    Returns:
        ``{"projectRoot", "projectId", "initializedAt"}``
    """
    if not openrouter_key:
        raise ShipSpecUsageError("OpenRouter API key is required.")

    start = Path(cwd) if cwd else Path.cwd()
    project_root = find_project_root(start) or start.resolve()
    state_path = project_root / PROJECT_DIR / PROJECT_FILE
    try:
        existing = read_json(state_path)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable {state_path}: {e}")
        existing = None
    existing = existing if isinstance(existing, dict) else {}

    secrets = secrets or SecretsStore(project_root)
    try:
        secrets.set(OPENROUTER_API_KEY, openrouter_key)
        if tavily_key:
            secrets.set(TAVILY_API_KEY, tavily_key)
    except KeyringError as e:
        raise ShipSpecRuntimeError("Failed to store API keys in OS keychain.", cause=e) from e

    try:
        (project_root / PROJECT_DIR / OUTPUTS_DIR).mkdir(parents=True, exist_ok=True, mode=0o700)
    except OSError as e:
        raise ShipSpecRuntimeError("Failed to create .ship-spec directory structure.", cause=e) from e

    now = datetime.now(timezone.utc).isoformat()
    project_id = existing.get("projectId") or str(uuid.uuid4())
    initialized_at = existing.get("initializedAt") or now
    write_json_atomic(
        state_path,
        {
            "schemaVersion": PROJECT_SCHEMA_VERSION,
            "projectId": project_id,
            "initializedAt": initialized_at,
            "updatedAt": now,
            "projectRoot": str(project_root),
        },
    )
    _ensure_gitignore(project_root)
    logger.info(f"Connected project {project_id} at {project_root}")
    return {
        "projectRoot": str(project_root),
        "projectId": project_id,
        "initializedAt": initialized_at,
    }


# =============================================================================
# Models
# =============================================================================


def list_models() -> list[dict[str, str]]:
    return [{"alias": alias, "name": name} for alias, name in SUPPORTED_CHAT_MODELS.items()]


def current_model(project_root: Optional[Path] = None) -> str:
    settings = ShipSpecSettings.from_sources(project_root=project_root or resolve_project_root())
    return settings.llm_model


def set_model(model: str, project_root: Optional[Path] = None) -> str:
    """Persist the chat model (alias or full id) into ``settings.yaml``."""
    full_name = SUPPORTED_CHAT_MODELS.get(model, model)
    if full_name not in SUPPORTED_CHAT_MODELS.values():
        raise ShipSpecUsageError(
            f'Invalid model: "{model}". Supported models: {", ".join(SUPPORTED_CHAT_MODELS)}'
        )
    root = project_root or resolve_project_root()
    try:
        write_settings_value(root, "llm_provider", "openrouter")
        write_settings_value(root, "llm_model", full_name)
    except ValueError as e:
        raise ShipSpecUsageError(str(e)) from e
    return full_name


# =============================================================================
# Listings
# =============================================================================


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def list_tracks(project_root: Optional[Path] = None) -> list[dict[str, Any]]:
    """Planning tracks, most recently updated first; undated tracks last."""
    planning_dir = (project_root or resolve_project_root()) / PROJECT_DIR / "planning"
    if not planning_dir.is_dir():
        return []

    tracks = []
    for entry in planning_dir.iterdir():
        track_path = entry / "track.json"
        if not entry.is_dir() or not track_path.is_file():
            continue
        try:
            data = read_json(track_path)
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Skipping unreadable track {entry.name}: {e}")
            continue
        if not isinstance(data, dict):
            continue
        idea = data.get("initialIdea")
        tracks.append(
            {
                "id": data["id"] if isinstance(data.get("id"), str) else entry.name,
                "phase": data["phase"] if isinstance(data.get("phase"), str) else "unknown",
                "initialIdea": idea[:IDEA_PREVIEW_LENGTH] if isinstance(idea, str) else "",
                "updatedAt": data["updatedAt"] if isinstance(data.get("updatedAt"), str) else "",
            }
        )

    dated = [(t, _parse_timestamp(t["updatedAt"])) for t in tracks]
    valid = sorted((p for p in dated if p[1] is not None), key=lambda p: p[1], reverse=True)
    invalid = [p for p in dated if p[1] is None]
    return [t for t, _ in valid + invalid]


def list_outputs(project_root: Optional[Path] = None) -> list[dict[str, Any]]:
    """Saved productionalize reports, newest first."""
    outputs_dir = (project_root or resolve_project_root()) / PROJECT_DIR / OUTPUTS_DIR
    if not outputs_dir.is_dir():
        return []
    outputs = [
        {
            "name": path.name,
            "timestamp": path.name[len("report-") : -len(".md")],
            "type": "report",
            "size": path.stat().st_size,
        }
        for path in outputs_dir.glob("report-*.md")
    ]
    return sorted(outputs, key=lambda o: o["timestamp"], reverse=True)


__all__ = [
    "connect",
    "current_model",
    "list_models",
    "list_outputs",
    "list_tracks",
    "set_model",
]
