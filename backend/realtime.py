"""
In-process realtime change channels.

Components that want row changes subscribe with a channel name and a
``ChannelConfig``. Subscriptions that resolve to the same channel key
(``"{name}-{table}-{event}"``) share one channel: the channel is created on
the first subscribe and removed when the last subscriber leaves. Every
subscriber of a shared channel receives every matching change.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

ChangeCallback = Callable[["Change"], None]

FILTER_OPERATORS = ("eq", "neq", "in", "gt", "gte", "lt", "lte")


@dataclass(frozen=True)
class ChannelConfig:
    table: str
    schema: str = "public"
    event: str = "*"
    filter: Optional[str] = None


@dataclass(frozen=True)
class Change:
    schema: str
    table: str
    event: str
    new: dict
    old: dict


@dataclass
class _Channel:
    key: str
    config: ChannelConfig
    callbacks: dict[int, ChangeCallback] = field(default_factory=dict)

    @property
    def ref_count(self) -> int:
        return len(self.callbacks)


class FilterError(ValueError):
    """Raised for filter strings that are not ``column=op.value``."""


def parse_filter(expr: str) -> tuple[str, str, str]:
    column, sep, rest = expr.partition("=")
    op, dot, value = rest.partition(".")
    if not sep or not dot or not column or op not in FILTER_OPERATORS:
        raise FilterError(f"Invalid channel filter: {expr!r}")
    return column, op, value


def _as_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def matches_filter(expr: Optional[str], row: dict) -> bool:
    if not expr:
        return True
    column, op, expected = parse_filter(expr)
    if column not in row:
        return False
    actual = row[column]
    if hasattr(actual, "value"):
        actual = actual.value
    actual_text = "" if actual is None else str(actual)

    if op == "eq":
        return actual_text == expected
    if op == "neq":
        return actual_text != expected
    if op == "in":
        options = [v.strip() for v in expected.strip("()").split(",")]
        return actual_text in options

    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        left, right = actual_text, expected
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    return left <= right


class Subscription:
    """Handle returned by ``ChannelRegistry.subscribe``."""

    def __init__(self, registry: "ChannelRegistry", key: str, token: int):
        self.registry = registry
        self.key = key
        self._token = token
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self.registry._release(self.key, self._token)


class ChannelRegistry:
    def __init__(self):
        self._channels: dict[str, _Channel] = {}
        self._next_token = 0
        self._lock = threading.RLock()

    @staticmethod
    def channel_key(channel_name: str, config: ChannelConfig) -> str:
        return f"{channel_name}-{config.table}-{config.event}"

    def subscribe(
        self, channel_name: str, config: ChannelConfig, callback: ChangeCallback
    ) -> Subscription:
        if config.filter:
            parse_filter(config.filter)
        key = self.channel_key(channel_name, config)
        with self._lock:
            channel = self._channels.get(key)
            if channel is None:
                channel = _Channel(key=key, config=config)
                self._channels[key] = channel
                logger.debug("Created realtime channel %s", key)
            self._next_token += 1
            token = self._next_token
            channel.callbacks[token] = callback
            logger.debug("Channel %s ref count %d", key, channel.ref_count)
        return Subscription(self, key, token)

    def _release(self, key: str, token: int) -> None:
        with self._lock:
            channel = self._channels.get(key)
            if channel is None:
                return
            channel.callbacks.pop(token, None)
            if channel.ref_count == 0:
                del self._channels[key]
                logger.debug("Removed realtime channel %s", key)

    def publish(
        self,
        table: str,
        event: str,
        new: Optional[dict] = None,
        old: Optional[dict] = None,
        schema: str = "public",
    ) -> int:
        """
        Deliver a change to every matching channel. Returns how many callbacks
        were invoked. Callback errors are logged and do not stop delivery.
        """
        change = Change(schema=schema, table=table, event=event, new=new or {}, old=old or {})
        row = change.old if event == "DELETE" else change.new
        with self._lock:
            targets = [
                callback
                for channel in self._channels.values()
                if channel.config.schema == schema
                and channel.config.table == table
                and channel.config.event in ("*", event)
                and matches_filter(channel.config.filter, row)
                for callback in channel.callbacks.values()
            ]

        for callback in targets:
            try:
                callback(change)
            except Exception:
                logger.exception("Realtime callback failed for %s %s", table, event)
        return len(targets)

    def active_channel_count(self) -> int:
        with self._lock:
            return len(self._channels)

    def channel_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._channels)

    def ref_count(self, key: str) -> int:
        with self._lock:
            channel = self._channels.get(key)
            return channel.ref_count if channel else 0

    def cleanup_all(self) -> int:
        with self._lock:
            count = len(self._channels)
            self._channels.clear()
        return count
