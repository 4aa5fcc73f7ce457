"""
Per-webhook health statistics and the circuit breaker built on top of them.

The health score is 0..100::

    round(success_rate * 100 - min(consecutive_failures * 10, 50))

A webhook with no recorded calls scores 100.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class HealthStats:
    total_calls: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_success: Optional[float] = None
    last_failure: Optional[float] = None
    average_response_time_ms: float = 0.0
    consecutive_failures: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    opened_at: Optional[float] = None
    trial_in_flight: bool = False


@dataclass
class WebhookHealthTracker:
    failure_threshold: int = 5
    min_health_score: int = 20
    min_calls: int = 5
    cooldown_seconds: float = 300.0
    clock: Callable[[], float] = time.time
    stats: dict[str, HealthStats] = field(default_factory=dict)
    circuits: dict[str, _Circuit] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.RLock()

    def record(self, webhook_id: str, success: bool, response_time_ms: float) -> bool:
        """
        Record one call. Returns True when the webhook has failed
        ``failure_threshold`` times in a row and should be disabled.
        """
        now = self.clock()
        with self._lock:
            stats = self.stats.setdefault(webhook_id, HealthStats())
            stats.total_calls += 1
            if success:
                stats.success_count += 1
                stats.last_success = now
                stats.consecutive_failures = 0
                stats.average_response_time_ms = (
                    stats.average_response_time_ms * (stats.success_count - 1)
                    + response_time_ms
                ) / stats.success_count
            else:
                stats.failure_count += 1
                stats.last_failure = now
                stats.consecutive_failures += 1

            self._update_circuit(webhook_id, stats, success, now)
            should_disable = stats.consecutive_failures >= self.failure_threshold

        if should_disable:
            logger.warning(
                "Webhook %s has %d consecutive failures. Consider disabling.",
                webhook_id,
                stats.consecutive_failures,
            )
        return should_disable

    def _update_circuit(
        self, webhook_id: str, stats: HealthStats, success: bool, now: float
    ) -> None:
        circuit = self.circuits.setdefault(webhook_id, _Circuit())
        circuit.trial_in_flight = False
        if success:
            if circuit.state is not CircuitState.CLOSED:
                logger.info("Circuit for webhook %s closed", webhook_id)
            circuit.state = CircuitState.CLOSED
            circuit.opened_at = None
            return

        trips = stats.consecutive_failures >= self.failure_threshold or (
            stats.total_calls >= self.min_calls
            and self._score(stats) < self.min_health_score
        )
        if circuit.state is CircuitState.HALF_OPEN or trips:
            if circuit.state is not CircuitState.OPEN:
                logger.warning(
                    "Circuit for webhook %s opened (score=%d, consecutive_failures=%d)",
                    webhook_id,
                    self._score(stats),
                    stats.consecutive_failures,
                )
            circuit.state = CircuitState.OPEN
            circuit.opened_at = now

    def allow_request(self, webhook_id: str) -> bool:
        """
        False while the circuit is open. Once the cooldown has elapsed a single
        trial request is let through (half-open).
        """
        with self._lock:
            circuit = self.circuits.get(webhook_id)
            if circuit is None or circuit.state is CircuitState.CLOSED:
                return True
            if circuit.state is CircuitState.OPEN:
                if self.clock() - (circuit.opened_at or 0) < self.cooldown_seconds:
                    return False
                circuit.state = CircuitState.HALF_OPEN
                logger.info("Circuit for webhook %s half-open", webhook_id)
            if circuit.trial_in_flight:
                return False
            circuit.trial_in_flight = True
            return True

    def release_trial(self, webhook_id: str) -> None:
        """Let the next half-open trial through when the last one never recorded."""
        with self._lock:
            circuit = self.circuits.get(webhook_id)
            if circuit is not None:
                circuit.trial_in_flight = False

    def circuit_state(self, webhook_id: str) -> CircuitState:
        with self._lock:
            circuit = self.circuits.get(webhook_id)
            return circuit.state if circuit else CircuitState.CLOSED

    def get(self, webhook_id: str) -> Optional[HealthStats]:
        with self._lock:
            return self.stats.get(webhook_id)

    @staticmethod
    def _score(stats: HealthStats) -> int:
        if stats.total_calls == 0:
            return 100
        success_rate = stats.success_count / stats.total_calls
        penalty = min(stats.consecutive_failures * 10, 50)
        return max(0, round(success_rate * 100 - penalty))

    def health_score(self, webhook_id: str) -> int:
        with self._lock:
            stats = self.stats.get(webhook_id)
            return self._score(stats) if stats else 100

    def reset(self, webhook_id: str) -> None:
        """Forget stats and close the circuit (after a manual fix)."""
        with self._lock:
            self.stats.pop(webhook_id, None)
            self.circuits.pop(webhook_id, None)
