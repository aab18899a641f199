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

"""Line-delimited JSON server over stdin/stdout.

Every request line is dispatched as its own task, so a control request such
as ``ask.cancel`` is serviced while a streaming request is still running.
Events from concurrent requests interleave at line granularity; stdout
carries protocol lines only (logs go to stderr).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TextIO

from pydantic import ValidationError

from shipspec.backend.handlers import RpcHandlers
from shipspec.backend.protocol import (
    METHODS,
    error_event,
    format_validation_issues,
    parse_request,
    serialize_event,
)
from shipspec.utils.redaction import redact_object

logger = logging.getLogger(__name__)

LineReader = Callable[[], Awaitable[str]]


async def read_stdin_line() -> str:
    return await asyncio.get_running_loop().run_in_executor(None, sys.stdin.readline)


class RpcServer:
    """Read requests, run handlers concurrently, write redacted events."""

    def __init__(
        self,
        handlers: Optional[RpcHandlers] = None,
        *,
        reader: LineReader = read_stdin_line,
        writer: TextIO = sys.stdout,
    ):
        self.handlers = handlers or RpcHandlers()
        self._reader = reader
        self._writer = writer
        self._write_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()

    async def write_event(self, event: dict[str, Any]) -> None:
        line = json.dumps(redact_object(serialize_event(event)), ensure_ascii=False)
        async with self._write_lock:
            self._writer.write(line + "\n")
            self._writer.flush()

    async def dispatch_line(self, line: str) -> None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            await self.write_event(error_event("invalid_json", "Failed to parse JSON request."))
            return

        method = data.get("method") if isinstance(data, dict) else None
        if isinstance(method, str) and method not in METHODS:
            await self.write_event(error_event("method_not_found", "Unknown method."))
            return

        try:
            request = parse_request(data)
        except ValidationError as e:
            await self.write_event(error_event("invalid_request", format_validation_issues(e)))
            return

        try:
            async for event in self.handlers.handle_request(request):
                await self.write_event(event)
        except Exception as e:
            logger.exception(f"Unhandled error in {request.method}: {e}")
            await self.write_event(error_event("handler_error", "Unhandled backend error."))

    def _spawn(self, line: str) -> None:
        task = asyncio.create_task(self.dispatch_line(line))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def serve(self) -> None:
        """Process requests until the input closes, then drain in-flight requests."""
        logger.info("Backend server started")
        try:
            while True:
                line = await self._reader()
                if not line:
                    break
                if not line.strip():
                    continue
                self._spawn(line.strip())
            if self._tasks:
                await asyncio.gather(*self._tasks)
        finally:
            for task in self._tasks:
                task.cancel()
            self.handlers.registry.clear()
            logger.info("Backend server stopped")


def run_server(project_root: Optional[Path] = None) -> None:
    asyncio.run(RpcServer(RpcHandlers(project_root=project_root)).serve())


__all__ = ["RpcServer", "read_stdin_line", "run_server"]
