from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from caportal.bus import BusConnectionError, analysis_channel_from_env
from caportal.ingestion import AnalysisIngestionPipeline

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionRunStats:
    received: int = 0
    ingested: int = 0
    unchanged: int = 0
    dropped: int = 0
    reconnects: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "received": self.received,
            "ingested": self.ingested,
            "unchanged": self.unchanged,
            "dropped": self.dropped,
            "reconnects": self.reconnects,
        }

    def add(self, other: dict[str, int]) -> None:
        self.received += int(other["received"])
        self.ingested += int(other["ingested"])
        self.unchanged += int(other["unchanged"])
        self.dropped += int(other["dropped"])
        self.reconnects += int(other["reconnects"])


class SubscriptionRuntime:
    """Resident loop that feeds one bus channel into the ingestion pipeline.

    Messages are handled one at a time. ``request_stop`` lets the in-flight
    message finish (upsert and document sync) before the loop exits and the
    subscription is closed. A dropped bus connection is retried with capped
    exponential backoff.
    """

    def __init__(
        self,
        *,
        bus: Any,
        pipeline: AnalysisIngestionPipeline,
        channel: str,
        poll_timeout_ms: int = 1000,
        reconnect_backoff_base_ms: int = 500,
        reconnect_backoff_max_ms: int = 30000,
        max_messages_per_iteration: int = 100,
    ) -> None:
        self.bus = bus
        self.pipeline = pipeline
        self.channel = channel
        self.poll_timeout_ms = max(0, int(poll_timeout_ms))
        self.reconnect_backoff_base_ms = max(1, int(reconnect_backoff_base_ms))
        self.reconnect_backoff_max_ms = max(self.reconnect_backoff_base_ms, int(reconnect_backoff_max_ms))
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self._stop = threading.Event()
        self._subscription: Any = None
        self._failed_attempts = 0

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def backoff_ms(self, attempt: int) -> int:
        exponent = max(0, int(attempt) - 1)
        return min(self.reconnect_backoff_max_ms, self.reconnect_backoff_base_ms * (2**exponent))

    def _connection_lost(self, exc: BusConnectionError, stats: SubscriptionRunStats) -> None:
        self.close()
        self._failed_attempts += 1
        stats.reconnects += 1
        delay_ms = self.backoff_ms(self._failed_attempts)
        logger.warning(
            "bus_connection_lost channel=%s attempt=%d retry_in_ms=%d error=%s",
            self.channel,
            self._failed_attempts,
            delay_ms,
            exc,
        )
        # wakes early when a stop is requested
        self._stop.wait(delay_ms / 1000.0)

    def _ensure_subscription(self) -> Any:
        if self._subscription is None:
            self._subscription = self.bus.subscribe(self.channel)
            logger.info("bus_subscribed channel=%s", self.channel)
        return self._subscription

    def run_once(self) -> dict[str, int]:
        stats = SubscriptionRunStats()
        if self.stopping:
            return stats.as_dict()
        try:
            subscription = self._ensure_subscription()
        except BusConnectionError as exc:
            self._connection_lost(exc, stats)
            return stats.as_dict()

        timeout_s = self.poll_timeout_ms / 1000.0
        while stats.received < self.max_messages_per_iteration and not self.stopping:
            try:
                message = subscription.get_message(timeout_s=timeout_s)
            except BusConnectionError as exc:
                self._connection_lost(exc, stats)
                break
            self._failed_attempts = 0
            if message is None:
                break
            # only the first poll of an iteration blocks
            timeout_s = 0.0
            stats.received += 1
            outcome = self.pipeline.handle_raw(message.data)
            if not outcome.ok:
                stats.dropped += 1
            elif outcome.written:
                stats.ingested += 1
            else:
                stats.unchanged += 1
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = SubscriptionRunStats()
        iterations = 0
        try:
            while not self.stopping:
                aggregate.add(self.run_once())
                iterations += 1
                if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                    break
        finally:
            self.close()
        logger.info("subscription_runtime_stopped channel=%s iterations=%d", self.channel, iterations)
        return aggregate.as_dict()

    def close(self) -> None:
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            subscription.close()


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def create_subscription_runtime_from_env(
    *,
    store: Any,
    bus: Any,
    environ: Mapping[str, str] | None = None,
) -> SubscriptionRuntime:
    env = os.environ if environ is None else environ
    return SubscriptionRuntime(
        bus=bus,
        pipeline=AnalysisIngestionPipeline(store=store),
        channel=analysis_channel_from_env(env),
        poll_timeout_ms=_env_int(env, "WORKER_POLL_TIMEOUT_MS", default=1000, minimum=0),
        reconnect_backoff_base_ms=_env_int(env, "WORKER_RECONNECT_BACKOFF_BASE_MS", default=500, minimum=1),
        reconnect_backoff_max_ms=_env_int(env, "WORKER_RECONNECT_BACKOFF_MAX_MS", default=30000, minimum=1),
        max_messages_per_iteration=_env_int(env, "WORKER_MAX_MESSAGES_PER_ITERATION", default=100, minimum=1),
    )
