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

"""Tests for shipspec.framework.checkpointer."""

import time

import pytest

from shipspec.framework.checkpointer import (
    JSONFileCheckpointer,
    SQLiteCheckpointer,
    create_checkpointer,
)
from shipspec.framework.graph import END, MemoryCheckpointer, StateGraph, WorkflowCheckpoint
from shipspec.framework.state import Channel, StateSchema


def make_checkpoint(thread_id="t1", node_id="n", state=None, **metadata):
    return WorkflowCheckpoint(
        checkpoint_id=f"{thread_id}-{node_id}-{time.time_ns()}",
        thread_id=thread_id,
        node_id=node_id,
        state=state or {"value": 1},
        timestamp=time.time(),
        metadata=metadata,
    )


@pytest.fixture(params=["sqlite", "json", "memory"])
def checkpointer(request, tmp_path):
    if request.param == "sqlite":
        store = SQLiteCheckpointer(tmp_path / "checkpoints.db")
        yield store
        store.close()
    elif request.param == "json":
        yield JSONFileCheckpointer(tmp_path / "checkpoints")
    else:
        yield MemoryCheckpointer()


class TestCheckpointerContract:
    """Behavior shared by every checkpointer."""

    @pytest.mark.asyncio
    async def test_get_missing(self, checkpointer):
        """Unknown threads have no checkpoint."""
        assert await checkpointer.get("missing") is None
        assert await checkpointer.list("missing") == []

    @pytest.mark.asyncio
    async def test_latest_wins(self, checkpointer):
        """get returns the most recent put."""
        await checkpointer.put("t1", make_checkpoint(node_id="first"))
        await checkpointer.put("t1", make_checkpoint(node_id="second"))
        latest = await checkpointer.get("t1")
        assert latest.node_id == "second"
        assert [c.node_id for c in await checkpointer.list("t1")] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_threads_are_isolated(self, checkpointer):
        """Checkpoints never leak across threads."""
        await checkpointer.put("t1", make_checkpoint("t1", state={"value": 1}))
        await checkpointer.put("t2", make_checkpoint("t2", state={"value": 2}))
        assert (await checkpointer.get("t1")).state == {"value": 1}
        assert (await checkpointer.get("t2")).state == {"value": 2}

    @pytest.mark.asyncio
    async def test_metadata_round_trip(self, checkpointer):
        """Status and interrupt metadata survive persistence."""
        interrupt = {"payload": {"kind": "clarification"}, "expects": "mapping", "resume_values": []}
        await checkpointer.put("t1", make_checkpoint(status="interrupted", interrupt=interrupt))
        loaded = await checkpointer.get("t1")
        assert loaded.status == "interrupted"
        assert loaded.pending_interrupt == interrupt


class TestDurability:
    """Tests for durable stores across instances."""

    @pytest.mark.asyncio
    async def test_sqlite_survives_reopen(self, tmp_path):
        """A new SQLite instance sees earlier checkpoints."""
        first = SQLiteCheckpointer(tmp_path / "db.sqlite")
        await first.put("t", make_checkpoint("t"))
        first.close()

        second = SQLiteCheckpointer(tmp_path / "db.sqlite")
        assert (await second.get("t")).state == {"value": 1}
        assert await second.delete_thread("t") == 1
        assert await second.get("t") is None
        second.close()

    @pytest.mark.asyncio
    async def test_resume_after_restart(self, tmp_path):
        """An interrupted run resumes on a freshly compiled graph."""

        def build():
            schema = StateSchema(Channel("answer"))
            graph = StateGraph(schema)
            graph.add_node("ask", lambda s, ctx: {"answer": ctx.interrupt("name?")})
            graph.add_edge("ask", END)
            graph.set_entry_point("ask")
            return graph.compile(checkpointer=SQLiteCheckpointer(tmp_path / "db.sqlite"))

        await build().invoke(thread_id="track-1")
        result = await build().resume("track-1", "ada")
        assert result.state["answer"] == "ada"

    def test_json_rejects_unsafe_thread_ids(self, tmp_path):
        """Thread ids cannot escape the checkpoint directory."""
        store = JSONFileCheckpointer(tmp_path)
        with pytest.raises(ValueError):
            store._get_thread_dir("../escape")


class TestCreateCheckpointer:
    """Tests for create_checkpointer."""

    def test_kinds(self, tmp_path):
        """Each kind maps to its implementation."""
        assert isinstance(create_checkpointer("memory"), MemoryCheckpointer)
        assert isinstance(create_checkpointer("sqlite", tmp_path / "c.db"), SQLiteCheckpointer)
        assert isinstance(create_checkpointer("json", tmp_path / "c"), JSONFileCheckpointer)

    def test_errors(self):
        """Unknown kinds and missing paths are rejected."""
        with pytest.raises(ValueError):
            create_checkpointer("redis")
        with pytest.raises(ValueError):
            create_checkpointer("sqlite")
