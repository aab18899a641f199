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

"""Typed workflow state channels with per-channel reducers.

A workflow state is a plain dict mapping channel names to values. Each
channel declares a reducer that folds a partial update into the current
value. Reducers are total: ``None`` or empty updates are accepted.

Reducers:
    - replace: last write wins (default)
    - append: sequence concatenation, order dependent
    - upsert_by_id: records keyed by ``id``, first-seen order preserved
    - concat_list: accumulation of discovered artifacts

Only order-insensitive reducers (``upsert_by_id``, ``concat_list``) may be
used on channels written by fan-out nodes. ``audit_fanout_channels`` flags
violations so they can be reported at compile time.

Example:
    schema = StateSchema(
        Channel("userQuery"),
        Channel("subtasks", upsert_by_id, default=list),
    )
    state = schema.initial_state({"userQuery": "How does auth work?"})
    state = schema.apply(state, {"subtasks": [{"id": "1", "query": "Q1"}]})
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from collections.abc import Callable, Iterable, Mapping

logger = logging.getLogger(__name__)

Reducer = Callable[[Any, Any], Any]


# =============================================================================
# Reducers
# =============================================================================


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def replace(current: Any, update: Any) -> Any:
    """Last write wins."""
    return update


def append(current: Any, update: Any) -> list[Any]:
    """Concatenate ``update`` after ``current``. Order dependent."""
    return _as_list(current) + _as_list(update)


def _record_id(record: Any) -> Any:
    if isinstance(record, Mapping):
        return record.get("id")
    return getattr(record, "id", None)


def upsert_by_id(current: Any, update: Any) -> list[Any]:
    """Merge records by ``id``.

    A record whose id was already seen replaces the earlier record in place,
    new ids are appended. The result is ordered by first-seen insertion, so
    the same set of per-id updates gives the same list in any order.
    """
    merged: dict[Any, Any] = {}
    for record in _as_list(current) + _as_list(update):
        merged[_record_id(record)] = record
    return list(merged.values())


def concat_list(current: Any, update: Any) -> list[Any]:
    """Accumulate artifacts. Consumers treat the result as an unordered bag."""
    return _as_list(current) + _as_list(update)


# Reducers safe to use from concurrently running fan-out instances
ORDER_INSENSITIVE_REDUCERS: frozenset[Reducer] = frozenset({upsert_by_id, concat_list})


# =============================================================================
# Channels and Schema
# =============================================================================


@dataclass
class Channel:
    """A named state slot with its merge rule.

    Attributes:
        name: Channel name (state key)
        reducer: Function folding an update into the current value
        default: Factory for the initial value
    """

    name: str
    reducer: Reducer = replace
    default: Optional[Callable[[], Any]] = None

    @property
    def order_insensitive(self) -> bool:
        return self.reducer in ORDER_INSENSITIVE_REDUCERS

    def initial_value(self) -> Any:
        return self.default() if self.default is not None else None


class UnknownChannelError(KeyError):
    """Update targets a channel the schema does not declare."""

    def __init__(self, channel: str):
        super().__init__(channel)
        self.channel = channel

    def __str__(self) -> str:
        return f"Unknown state channel: {self.channel}"


class StateSchema:
    """Registry of channels for one workflow definition."""

    def __init__(self, *channels: Channel):
        self._channels: dict[str, Channel] = {}
        for channel in channels:
            self.register(channel)

    def register(self, channel: Channel) -> "StateSchema":
        if channel.name in self._channels:
            raise ValueError(f"Channel '{channel.name}' already registered")
        self._channels[channel.name] = channel
        return self

    @property
    def channels(self) -> dict[str, Channel]:
        return dict(self._channels)

    def __contains__(self, name: object) -> bool:
        return name in self._channels

    def channel(self, name: str) -> Channel:
        try:
            return self._channels[name]
        except KeyError:
            raise UnknownChannelError(name) from None

    def initial_state(self, input_state: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        """Build a fresh state with defaults, then fold ``input_state`` in."""
        state = {name: ch.initial_value() for name, ch in self._channels.items()}
        if input_state:
            state = self.apply(state, input_state)
        return state

    def merge(self, state: dict[str, Any], channel_name: str, update: Any) -> dict[str, Any]:
        """Apply one channel's reducer and return a new state dict."""
        channel = self.channel(channel_name)
        new_state = dict(state)
        current = state.get(channel_name, channel.initial_value())
        new_state[channel_name] = channel.reducer(current, update)
        return new_state

    def apply(self, state: dict[str, Any], update: Optional[Mapping[str, Any]]) -> dict[str, Any]:
        """Apply a partial update through every touched channel's reducer."""
        if not update:
            return dict(state)
        for key, value in update.items():
            state = self.merge(state, key, value)
        return state

    def apply_all(
        self, state: dict[str, Any], updates: Iterable[Optional[Mapping[str, Any]]]
    ) -> dict[str, Any]:
        for update in updates:
            state = self.apply(state, update)
        return state

    def snapshot(self, state: Mapping[str, Any]) -> dict[str, Any]:
        """Detached deep copy of state suitable for persisting."""
        return copy.deepcopy(dict(state))

    def restore(self, snapshot: Mapping[str, Any]) -> dict[str, Any]:
        """Rebuild a state from a snapshot, filling channels added since."""
        state = {name: ch.initial_value() for name, ch in self._channels.items()}
        state.update(copy.deepcopy(dict(snapshot)))
        return state


# =============================================================================
# Fan-out audit
# =============================================================================


@dataclass
class ChannelAuditWarning:
    """A fan-out node writes a channel whose reducer is order dependent."""

    node: str
    channel: str
    reducer: str
    message: str = field(init=False)

    def __post_init__(self) -> None:
        self.message = (
            f"Fan-out node '{self.node}' writes channel '{self.channel}' "
            f"with order-dependent reducer '{self.reducer}'"
        )


def audit_fanout_channels(
    schema: StateSchema,
    writes_by_node: Mapping[str, Iterable[str]],
    fanout_nodes: Iterable[str],
) -> list[ChannelAuditWarning]:
    """Report channels written concurrently through an order-dependent reducer.

    Violations are reported and logged, never rewritten.

    Args:
        schema: Workflow state schema
        writes_by_node: Declared written channels per node
        fanout_nodes: Nodes launched as parallel instances

    Returns:
        One warning per offending (node, channel) pair
    """
    warnings: list[ChannelAuditWarning] = []
    for node in fanout_nodes:
        for channel_name in writes_by_node.get(node, ()):
            if channel_name not in schema:
                continue
            channel = schema.channel(channel_name)
            if not channel.order_insensitive:
                warning = ChannelAuditWarning(
                    node=node,
                    channel=channel_name,
                    reducer=getattr(channel.reducer, "__name__", repr(channel.reducer)),
                )
                logger.warning(warning.message)
                warnings.append(warning)
    return warnings


__all__ = [
    "Channel",
    "ChannelAuditWarning",
    "ORDER_INSENSITIVE_REDUCERS",
    "Reducer",
    "StateSchema",
    "UnknownChannelError",
    "append",
    "audit_fanout_channels",
    "concat_list",
    "replace",
    "upsert_by_id",
]
