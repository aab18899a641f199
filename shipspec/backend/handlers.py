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

"""Request handlers for the line-delimited JSON transport.

``RpcHandlers.handle_request()`` turns one validated request into a stream
of wire events. Session state lives in an explicit ``SessionRegistry``
created with the handlers; nothing is kept in module globals.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from shipspec.core.errors import ResumeResponseError, ShipSpecRuntimeError, ShipSpecUsageError
from shipspec.flows import admin
from shipspec.flows.ask import AskContext, ask_flow, create_ask_context
from shipspec.flows.planning import PlanningSession
from shipspec.flows.productionalize import ProductionalizeSession
from shipspec.backend.protocol import (
    AskStartParams,
    ConnectParams,
    ModelSetParams,
    PlanningResumeParams,
    PlanningStartParams,
    ProductionalizeResumeParams,
    ProductionalizeStartParams,
    error_event,
)
from shipspec.utils.redaction import sanitize_error

logger = logging.getLogger(__name__)

Event = dict[str, Any]


def to_error_event(error: BaseException, code: Optional[str] = None) -> Event:
    """Map an exception to an ``error`` event with a stable code."""
    if code is not None:
        return error_event(code, sanitize_error(error))
    if isinstance(error, ResumeResponseError):
        return error_event("invalid_resume_response", sanitize_error(error))
    if isinstance(error, ShipSpecUsageError):
        return error_event("usage_error", sanitize_error(error))
    if isinstance(error, ShipSpecRuntimeError):
        return error_event("runtime_error", error.to_public_string())
    return error_event("unknown_error", sanitize_error(error))


def _session_busy(label: str, session_id: str) -> Event:
    return error_event("busy", f"{label} {session_id} is already active in this process.")


async def cancellable(source: AsyncIterator[Event], cancel: asyncio.Event) -> AsyncIterator[Event]:
    """Relay ``source`` until it ends or ``cancel`` is set.

    Each step of ``source`` runs in its own task so a cancel interrupts a
    step that is blocked on I/O, not only the gap between two events.

    Raises:
        ShipSpecRuntimeError: "Request canceled" once ``cancel`` is set
    """
    iterator = source.__aiter__()
    while True:
        step = asyncio.ensure_future(iterator.__anext__())
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({step, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            step.cancel()
            raise
        finally:
            waiter.cancel()
        if not step.done():
            step.cancel()
            await asyncio.gather(step, return_exceptions=True)
            raise ShipSpecRuntimeError("Request canceled")
        try:
            event = step.result()
        except StopAsyncIteration:
            return
        yield event


@dataclass
class AskContextCache:
    context: AskContext
    reindex: bool
    cloud_ok: bool
    local_only: bool


@dataclass
class SessionRegistry:
    """Live sessions for one transport instance.

    Created when the server starts and dropped with it. Entries are added by
    start handlers and removed when the session completes or fails.
    """

    planning: dict[str, PlanningSession] = field(default_factory=dict)
    productionalize: dict[str, ProductionalizeSession] = field(default_factory=dict)
    ask_cancel: Optional[asyncio.Event] = None
    ask_cache: Optional[AskContextCache] = None

    def clear(self) -> None:
        self.planning.clear()
        self.productionalize.clear()
        self.ask_cache = None
        if self.ask_cancel is not None:
            self.ask_cancel.set()


class RpcHandlers:
    """Dispatch requests to flows.

    Args:
        registry: Session registry (a fresh one when omitted)
        project_root: Project root for listings and model settings
        ask_context_factory: Builds the ask collaborators
        planning_factory: Builds planning sessions
        productionalize_factory: Builds productionalize sessions
    """

    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        *,
        project_root: Optional[Path] = None,
        ask_context_factory: Callable[..., Awaitable[AskContext]] = create_ask_context,
        planning_factory: Callable[..., Awaitable[PlanningSession]] = PlanningSession.create,
        productionalize_factory: Callable[
            ..., Awaitable[ProductionalizeSession]
        ] = ProductionalizeSession.create,
    ):
        self.registry = registry or SessionRegistry()
        self.project_root = project_root
        self._ask_context_factory = ask_context_factory
        self._planning_factory = planning_factory
        self._productionalize_factory = productionalize_factory
        self._handlers: dict[str, Callable[..., AsyncIterator[Event]]] = {
            "ask.start": self.handle_ask_start,
            "ask.cancel": self.handle_ask_cancel,
            "planning.start": self.handle_planning_start,
            "planning.resume": self.handle_planning_resume,
            "planning.list": self.handle_planning_list,
            "productionalize.start": self.handle_productionalize_start,
            "productionalize.resume": self.handle_productionalize_resume,
            "productionalize.list": self.handle_productionalize_list,
            "connect": self.handle_connect,
            "model.list": self.handle_model_list,
            "model.current": self.handle_model_current,
            "model.set": self.handle_model_set,
        }

    async def handle_request(self, request: Any) -> AsyncIterator[Event]:
        handler = self._handlers.get(request.method)
        if handler is None:
            yield error_event("method_not_found", "Unknown method.")
            return
        params = getattr(request, "params", None)
        stream = handler(params) if params is not None else handler()
        async for event in stream:
            yield event

    # =========================================================================
    # ask
    # =========================================================================

    async def _ask_context(self, reindex: bool, cloud_ok: bool, local_only: bool) -> AskContext:
        # Reused only when no reindex is involved and the consent flags match.
        cache = self.registry.ask_cache
        if (
            cache is not None
            and not reindex
            and not cache.reindex
            and cache.cloud_ok == cloud_ok
            and cache.local_only == local_only
        ):
            return cache.context
        context = await self._ask_context_factory(
            reindex=reindex, cloud_ok=cloud_ok, local_only=local_only, project_root=self.project_root
        )
        self.registry.ask_cache = AskContextCache(context, reindex, cloud_ok, local_only)
        return context

    async def handle_ask_start(self, params: AskStartParams) -> AsyncIterator[Event]:
        if self.registry.ask_cancel is not None:
            yield error_event("busy", "Ask session already running.")
            return

        cancel = asyncio.Event()
        self.registry.ask_cancel = cancel

        async def run() -> AsyncIterator[Event]:
            context = await self._ask_context(
                bool(params.reindex), bool(params.cloud_ok), bool(params.local_only)
            )
            history = [entry.model_dump() for entry in params.history or []]
            async for event in ask_flow(params.question, context, history, cancel_event=cancel):
                yield event

        try:
            async for event in cancellable(run(), cancel):
                yield event
        except Exception as e:
            yield to_error_event(e, "canceled" if cancel.is_set() else None)
        finally:
            self.registry.ask_cancel = None

    async def handle_ask_cancel(self) -> AsyncIterator[Event]:
        cancel = self.registry.ask_cancel
        if cancel is None:
            yield {"type": "status", "message": "No active ask session."}
            return
        cancel.set()
        yield {"type": "status", "message": "Canceled ask session."}

    # =========================================================================
    # planning
    # =========================================================================

    async def _stream_session(
        self,
        stream: AsyncIterator[Event],
        sessions: dict[str, Any],
        session_id: str,
        id_key: str,
    ) -> AsyncIterator[Event]:
        """Tag interrupts with the session id and deregister on completion or failure."""
        try:
            async for event in stream:
                if event["type"] == "interrupt":
                    event = {**event, id_key: session_id}
                elif event["type"] == "complete":
                    sessions.pop(session_id, None)
                yield event
        except Exception as e:
            # A rejected resume leaves the checkpoint intact; keep the session for a retry.
            if not isinstance(e, ShipSpecUsageError):
                sessions.pop(session_id, None)
            logger.debug(f"Session {session_id} failed: {e}")
            yield to_error_event(e)

    async def handle_planning_start(self, params: PlanningStartParams) -> AsyncIterator[Event]:
        sessions = self.registry.planning
        if params.track_id is not None and params.track_id in sessions:
            yield _session_busy("Planning track", params.track_id)
            return
        try:
            session = await self._planning_factory(
                idea=params.idea,
                track_id=params.track_id,
                reindex=bool(params.reindex),
                no_save=bool(params.no_save),
                cloud_ok=bool(params.cloud_ok),
                local_only=bool(params.local_only),
                project_root=self.project_root,
            )
        except Exception as e:
            yield to_error_event(e)
            return

        if session.track_id in sessions:
            yield _session_busy("Planning track", session.track_id)
            return
        sessions[session.track_id] = session
        async for event in self._stream_session(
            session.start(), sessions, session.track_id, "trackId"
        ):
            yield event

    async def handle_planning_resume(self, params: PlanningResumeParams) -> AsyncIterator[Event]:
        session = self.registry.planning.get(params.track_id)
        if session is None:
            yield error_event(
                "not_found", f"No active planning session for track {params.track_id}."
            )
            return
        async for event in self._stream_session(
            session.resume(params.response), self.registry.planning, params.track_id, "trackId"
        ):
            yield event

    async def handle_planning_list(self) -> AsyncIterator[Event]:
        try:
            tracks = admin.list_tracks(self.project_root)
        except Exception as e:
            yield to_error_event(e)
            return
        yield {"type": "complete", "result": {"tracks": tracks}}

    # =========================================================================
    # productionalize
    # =========================================================================

    async def handle_productionalize_start(
        self, params: ProductionalizeStartParams
    ) -> AsyncIterator[Event]:
        sessions = self.registry.productionalize
        if params.session_id is not None and params.session_id in sessions:
            yield _session_busy("Productionalize session", params.session_id)
            return
        try:
            session = await self._productionalize_factory(
                context=params.context,
                session_id=params.session_id,
                reindex=bool(params.reindex),
                enable_scans=bool(params.enable_scans),
                categories=params.categories,
                cloud_ok=bool(params.cloud_ok),
                local_only=bool(params.local_only),
                no_save=bool(params.no_save),
                project_root=self.project_root,
            )
        except Exception as e:
            yield to_error_event(e)
            return

        if session.session_id in sessions:
            yield _session_busy("Productionalize session", session.session_id)
            return
        sessions[session.session_id] = session
        async for event in self._stream_session(
            session.start(), sessions, session.session_id, "sessionId"
        ):
            yield event

    async def handle_productionalize_resume(
        self, params: ProductionalizeResumeParams
    ) -> AsyncIterator[Event]:
        session = self.registry.productionalize.get(params.session_id)
        if session is None:
            yield error_event(
                "not_found", f"No active productionalize session for {params.session_id}."
            )
            return
        async for event in self._stream_session(
            session.resume(params.response),
            self.registry.productionalize,
            params.session_id,
            "sessionId",
        ):
            yield event

    async def handle_productionalize_list(self) -> AsyncIterator[Event]:
        try:
            outputs = admin.list_outputs(self.project_root)
        except Exception as e:
            yield to_error_event(e)
            return
        yield {"type": "complete", "result": {"outputs": outputs}}

    # =========================================================================
    # connect / model
    # =========================================================================

    async def handle_connect(self, params: ConnectParams) -> AsyncIterator[Event]:
        try:
            result = admin.connect(params.openrouter_key, params.tavily_key, cwd=self.project_root)
        except Exception as e:
            yield to_error_event(e)
            return
        yield {"type": "complete", "result": result}

    async def handle_model_list(self) -> AsyncIterator[Event]:
        yield {"type": "complete", "result": admin.list_models()}

    async def handle_model_current(self) -> AsyncIterator[Event]:
        try:
            model = admin.current_model(self.project_root)
        except Exception as e:
            yield to_error_event(e)
            return
        yield {"type": "complete", "result": {"model": model}}

    async def handle_model_set(self, params: ModelSetParams) -> AsyncIterator[Event]:
        try:
            model = admin.set_model(params.model, self.project_root)
        except Exception as e:
            yield to_error_event(e)
            return
        yield {"type": "complete", "result": {"model": model}}


__all__ = ["AskContextCache", "RpcHandlers", "SessionRegistry", "cancellable", "to_error_event"]
