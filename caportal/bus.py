from __future__ import annotations

import json
import logging
import os
import queue
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from caportal.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)

DEFAULT_ANALYSIS_CHANNEL = "analysis:completed"


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis package is required for redis bus backend") from exc
    return redis


class BusConnectionError(RuntimeError):
    """The bus connection dropped; the subscriber should reconnect."""


@dataclass
class BusMessage:
    channel: str
    data: str


def _encode(payload: str | bytes | dict[str, Any]) -> str:
    if isinstance(payload, bytes):
        return payload.decode("utf-8")
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=True, sort_keys=True, separators=(",", ":"))


class InMemorySubscription:
    def __init__(self, *, bus: "InMemoryMessageBus", channel: str) -> None:
        self.channel = channel
        self._bus = bus
        self._inbox: queue.Queue[BusMessage] = queue.Queue()
        self.closed = False

    def deliver(self, message: BusMessage) -> None:
        self._inbox.put(message)

    def get_message(self, *, timeout_s: float = 0.0) -> BusMessage | None:
        if self.closed:
            raise BusConnectionError("subscription is closed")
        try:
            if timeout_s <= 0:
                return self._inbox.get_nowait()
            return self._inbox.get(timeout=timeout_s)
        except queue.Empty:
            return None

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus.unsubscribe(self)


class InMemoryMessageBus:
    """Process-local pub/sub with fire-and-forget delivery to current subscribers."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscribers: dict[str, list[InMemorySubscription]] = {}

    def publish(self, channel: str, payload: str | bytes | dict[str, Any]) -> int:
        message = BusMessage(channel=channel, data=_encode(payload))
        with self._lock:
            targets = list(self._subscribers.get(channel, []))
        for sub in targets:
            sub.deliver(message)
        return len(targets)

    def subscribe(self, channel: str) -> InMemorySubscription:
        sub = InMemorySubscription(bus=self, channel=channel)
        with self._lock:
            self._subscribers.setdefault(channel, []).append(sub)
        return sub

    def unsubscribe(self, sub: InMemorySubscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.channel, [])
            if sub in subs:
                subs.remove(sub)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, []))

    def reset(self) -> None:
        with self._lock:
            self._subscribers.clear()


class RedisSubscription:
    def __init__(self, *, pubsub: Any, channel: str, connection_errors: tuple[type[BaseException], ...]) -> None:
        self.channel = channel
        self._pubsub = pubsub
        self._connection_errors = connection_errors
        try:
            self._pubsub.subscribe(channel)
        except connection_errors as exc:
            raise BusConnectionError(f"redis subscribe failed: {exc}") from exc

    def get_message(self, *, timeout_s: float = 0.0) -> BusMessage | None:
        try:
            raw = self._pubsub.get_message(ignore_subscribe_messages=True, timeout=max(0.0, timeout_s))
        except self._connection_errors as exc:
            raise BusConnectionError(f"redis connection lost: {exc}") from exc
        if not isinstance(raw, dict) or raw.get("type") != "message":
            return None
        data = raw.get("data")
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        return BusMessage(channel=str(raw.get("channel") or self.channel), data=str(data or ""))

    def close(self) -> None:
        try:
            self._pubsub.close()
        except self._connection_errors as exc:
            logger.debug("redis_pubsub_close_failed channel=%s error=%s", self.channel, exc)


class RedisMessageBus:
    """Redis pub/sub; at-most-once per connected subscriber, no persistence."""

    def __init__(self, *, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis bus backend")
        self._dsn = dsn.strip()
        redis = _import_redis()
        self._client = redis.Redis.from_url(self._dsn, decode_responses=True)
        self._connection_errors = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)

    def publish(self, channel: str, payload: str | bytes | dict[str, Any]) -> int:
        try:
            return int(self._client.publish(channel, _encode(payload)) or 0)
        except self._connection_errors as exc:
            raise BusConnectionError(f"redis publish failed: {exc}") from exc

    def subscribe(self, channel: str) -> RedisSubscription:
        return RedisSubscription(
            pubsub=self._client.pubsub(ignore_subscribe_messages=True),
            channel=channel,
            connection_errors=self._connection_errors,
        )

    def reset(self) -> None:
        return None


def create_bus_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryMessageBus | RedisMessageBus:
    env = os.environ if environ is None else environ
    backend = env.get("CAP_BUS_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "redis":
        raise RuntimeError("CAP_BUS_BACKEND must be redis when CAP_REQUIRE_TRUESTACK=true")
    if backend == "memory":
        return InMemoryMessageBus()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when CAP_BUS_BACKEND=redis")
        return RedisMessageBus(dsn=dsn)
    raise RuntimeError(f"unsupported bus backend: {backend}")


def analysis_channel_from_env(environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    return env.get("CAP_ANALYSIS_CHANNEL", DEFAULT_ANALYSIS_CHANNEL).strip() or DEFAULT_ANALYSIS_CHANNEL
