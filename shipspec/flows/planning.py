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

"""Planning sessions: one track per idea, resumable across processes.

A track lives in ``.ship-spec/planning/<trackId>/``; its id doubles as the
graph thread id, so a track can be picked up from ``track.json`` or from
the checkpoint store alone.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from shipspec.config.settings import ShipSpecSettings
from shipspec.core.errors import ShipSpecRuntimeError, ShipSpecUsageError
from shipspec.flows.shared import (
    Event,
    GraphRun,
    check_cloud_consent,
    complete_event,
    create_code_search,
    load_settings,
    open_checkpointer,
    raise_for_result,
    status_event,
)
from shipspec.framework.graph import CompiledGraph, GraphExecutionResult
from shipspec.models.llm import ChatModel, create_chat_model
from shipspec.retrieval.search import CodeSearchProtocol
from shipspec.utils.files import UNTRUSTED_BANNER, ensure_within, read_json, write_json_atomic, write_text_atomic
from shipspec.utils.redaction import redact_text, sanitize_error
from shipspec.workflows.planning import create_planning_graph

logger = logging.getLogger(__name__)

MAX_TRACK_ID_LENGTH = 128
SAFE_TRACK_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

REVIEW_FILES = {"prd": "prd.md", "spec": "tech-spec.md"}


class TrackMetadata(BaseModel):
    """Contents of ``track.json``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    created_at: str
    updated_at: str
    phase: Literal["clarifying", "prd_review", "spec_review", "complete"]
    initial_idea: str = Field(min_length=1)
    prd_approved: bool
    spec_approved: bool


def validate_track_id(track_id: str) -> None:
    if not track_id:
        raise ShipSpecUsageError("Track ID cannot be empty.")
    if len(track_id) > MAX_TRACK_ID_LENGTH:
        raise ShipSpecUsageError(
            f"Track ID exceeds maximum length of {MAX_TRACK_ID_LENGTH} characters."
        )
    if not SAFE_TRACK_ID_PATTERN.match(track_id):
        raise ShipSpecUsageError(
            "Invalid track ID. Track IDs must contain only alphanumeric characters, "
            "hyphens, and underscores."
        )


def resolve_track_dir(planning_dir: Path, track_id: str) -> Path:
    """Track directory, required to be a direct child of ``planning_dir``."""
    try:
        track_dir = ensure_within(planning_dir, planning_dir / track_id)
    except ValueError as e:
        raise ShipSpecRuntimeError(
            "Track directory path escapes the expected planning directory.", cause=e
        ) from e
    if track_dir.parent != planning_dir.resolve():
        raise ShipSpecRuntimeError("Track directory path manipulation detected.")
    return track_dir


def load_track_metadata(path: Path) -> Optional[TrackMetadata]:
    try:
        data = read_json(path)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Unreadable track metadata {path}: {e}")
        return None
    if data is None:
        return None
    try:
        return TrackMetadata.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Invalid track metadata {path}: {sanitize_error(e)}")
        return None


def write_track_artifacts(
    track_dir: Path,
    track_id: str,
    initial_idea: str,
    state: dict[str, Any],
    existing: Optional[TrackMetadata],
) -> TrackMetadata:
    """Write ``track.json`` plus every document the state holds."""
    now = datetime.now(timezone.utc).isoformat()
    phase = state.get("phase") or "clarifying"
    metadata = TrackMetadata(
        id=track_id,
        created_at=existing.created_at if existing else now,
        updated_at=now,
        phase=phase,
        initial_idea=initial_idea,
        prd_approved=phase in ("spec_review", "complete"),
        spec_approved=phase == "complete",
    )
    write_json_atomic(track_dir / "track.json", metadata.model_dump(by_alias=True))

    history = state.get("clarificationHistory") or []
    if history:
        entries = "\n---\n\n".join(
            f"**Q:** {e['question']}\n\n**A:** {e['answer']}\n" for e in history
        )
        write_text_atomic(
            track_dir / "context.md",
            redact_text(UNTRUSTED_BANNER + "# Clarification History\n\n" + entries),
        )
    for key, filename in (("prd", "prd.md"), ("techSpec", "tech-spec.md"), ("taskPrompts", "tasks.md")):
        if state.get(key):
            write_text_atomic(track_dir / filename, UNTRUSTED_BANNER + redact_text(state[key]))
    return metadata


class PlanningSession:
    """A planning track bound to a compiled graph.

    Build with ``PlanningSession.create()``; then iterate ``start()`` once and
    ``resume(response)`` for every interrupt that follows.
    """

    def __init__(
        self,
        track_id: str,
        track_dir: Path,
        graph: CompiledGraph,
        *,
        initial_idea: Optional[str],
        resuming: bool = False,
        no_save: bool = False,
        metadata: Optional[TrackMetadata] = None,
    ):
        self.track_id = track_id
        self.track_dir = track_dir
        self.graph = graph
        self.initial_idea = initial_idea
        self.resuming = resuming
        self.no_save = no_save
        self.metadata = metadata

    @classmethod
    async def create(
        cls,
        *,
        idea: Optional[str] = None,
        track_id: Optional[str] = None,
        reindex: bool = False,
        no_save: bool = False,
        cloud_ok: bool = False,
        local_only: bool = False,
        project_root: Optional[Path] = None,
        settings: Optional[ShipSpecSettings] = None,
        model: Optional[ChatModel] = None,
    ) -> "PlanningSession":
        settings = settings or load_settings(project_root)
        check_cloud_consent(settings, command="planning", cloud_ok=cloud_ok, local_only=local_only)
        model = model or create_chat_model(settings)

        if track_id is not None:
            validate_track_id(track_id)
        resolved_id = track_id or str(uuid.uuid4())
        track_dir = resolve_track_dir(settings.planning_dir, resolved_id)

        metadata = load_track_metadata(track_dir / "track.json") if track_id else None

        search: Optional[CodeSearchProtocol] = None
        try:
            search = await create_code_search(settings, reindex=reindex)
        except ShipSpecRuntimeError as e:
            logger.warning(f"Failed to initialize code search: {e.to_public_string()}")

        graph = create_planning_graph(
            model, settings.project_root, search=search, checkpointer=open_checkpointer(settings)
        )

        initial_idea = (idea or "").strip() or (metadata.initial_idea if metadata else None)
        resuming = metadata is not None
        if track_id and not resuming:
            checkpoint = await graph.get_state(resolved_id)
            if checkpoint is None:
                raise ShipSpecUsageError(
                    f"No checkpoint found for track '{resolved_id}'. "
                    "The session may have been deleted or never existed. "
                    "Start a new session without --track."
                )
            stored_idea = (checkpoint.state.get("initialIdea") or "").strip()
            if not stored_idea:
                raise ShipSpecUsageError(
                    f"Track '{resolved_id}' has corrupted or empty checkpoint data. "
                    "Cannot resume this session. Start a new session without --track."
                )
            resuming = True
            initial_idea = initial_idea or stored_idea

        if not initial_idea and not resuming:
            raise ShipSpecUsageError("An initial idea is required to start planning.")

        if not no_save:
            track_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

        return cls(
            resolved_id,
            track_dir,
            graph,
            initial_idea=initial_idea,
            resuming=resuming,
            no_save=no_save,
            metadata=metadata,
        )

    def _interrupt_event(self, payload: dict[str, Any]) -> Event:
        doc_type = payload.get("docType")
        if payload.get("kind") == "document_review" and doc_type in REVIEW_FILES and not self.no_save:
            write_text_atomic(
                self.track_dir / REVIEW_FILES[doc_type],
                UNTRUSTED_BANNER + redact_text(payload["content"]),
            )
        return {"type": "interrupt", "payload": payload}

    def _complete_event(self, state: dict[str, Any]) -> Event:
        if not self.no_save and self.initial_idea:
            self.metadata = write_track_artifacts(
                self.track_dir, self.track_id, self.initial_idea, state, self.metadata
            )
        return complete_event(
            {
                "trackId": self.track_id,
                "trackDir": str(self.track_dir),
                "phase": state.get("phase"),
                "prd": state.get("prd") or "",
                "techSpec": state.get("techSpec") or "",
                "taskPrompts": state.get("taskPrompts") or "",
            }
        )

    def _handle_result(self, result: Optional[GraphExecutionResult]) -> Event:
        if result is None:
            raise ShipSpecRuntimeError("Planning run ended without a result.")
        raise_for_result(result, "Planning")
        if result.interrupt is not None:
            return self._interrupt_event(result.interrupt.payload)
        return self._complete_event(result.state)

    async def start(self) -> AsyncIterator[Event]:
        yield status_event("Starting planning workflow...")

        checkpoint = await self.graph.get_state(self.track_id) if self.resuming else None
        if checkpoint is not None and checkpoint.status == "interrupted":
            logger.info(f"Track {self.track_id} is waiting for input; replaying interrupt")
            yield self._interrupt_event(checkpoint.pending_interrupt["payload"])
            return
        if checkpoint is not None and checkpoint.status == "complete":
            yield self._complete_event(checkpoint.state)
            return

        if checkpoint is not None and checkpoint.status == "running":
            logger.info(f"Track {self.track_id} stopped at {checkpoint.node_id}; recovering")
            run = GraphRun(
                lambda sink: self.graph.recover(self.track_id, event_sink=sink)
            )
        else:
            run = GraphRun(
                lambda sink: self.graph.invoke(
                    {"initialIdea": self.initial_idea}, thread_id=self.track_id, event_sink=sink
                )
            )
        async for event in run.events():
            yield event
        yield self._handle_result(run.result)

    async def resume(self, response: Any) -> AsyncIterator[Event]:
        run = GraphRun(
            lambda sink: self.graph.resume(self.track_id, response, event_sink=sink)
        )
        async for event in run.events():
            yield event
        yield self._handle_result(run.result)


__all__ = [
    "PlanningSession",
    "TrackMetadata",
    "load_track_metadata",
    "resolve_track_dir",
    "validate_track_id",
    "write_track_artifacts",
]
