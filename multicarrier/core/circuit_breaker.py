"""
Circuit Breaker for carrier API calls

States:
- CLOSED: calls pass through
- OPEN: the carrier is failing, calls are refused with CircuitOpenError
- HALF_OPEN: one trial call decides between CLOSED and OPEN

One breaker per carrier code, so an outage at one carrier only degrades
that carrier's contribution to rate shopping. A breaker opens on either
signal:
- failure_threshold consecutive failures
- error_rate_threshold over the last `window` calls, once min_calls are seen

Thresholds come from Settings (CARRIER_BREAKER_*) and can be overridden per
carrier through the carrier's JSON config (breaker_failure_threshold,
breaker_recovery_seconds, breaker_error_rate).
"""
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Optional
from enum import Enum

from multicarrier.core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Circuit breaker for outbound carrier calls.

    Attributes:
        name: Registry key, "carrier:<code>"
        failure_threshold: Consecutive failures that open the circuit
        recovery_timeout: Base seconds before a trial call; doubles on every re-open
        error_rate_threshold: Failure share (0.0-1.0) of the rolling window that opens the circuit
    """

    FAILURE_THRESHOLD = 5
    RECOVERY_TIMEOUT = 60
    ERROR_RATE_THRESHOLD = 0.50
    WINDOW = 20
    MIN_CALLS = 10
    MAX_BACKOFF_MULTIPLIER = 16

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[int] = None,
        error_rate_threshold: Optional[float] = None,
        window: Optional[int] = None,
    ):
        self.name = name
        self.failure_threshold = self.FAILURE_THRESHOLD
        self.recovery_timeout = self.RECOVERY_TIMEOUT
        self.error_rate_threshold = self.ERROR_RATE_THRESHOLD
        self._outcomes: Deque[bool] = deque(maxlen=window or self.WINDOW)
        self.configure(failure_threshold, recovery_timeout, error_rate_threshold)

        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.backoff_multiplier = 1

        self.total_calls = 0
        self.total_failures = 0
        self.total_blocked = 0
        self.last_state_change: Optional[datetime] = None

    def configure(
        self,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[int] = None,
        error_rate_threshold: Optional[float] = None,
    ) -> None:
        """Apply new thresholds; None keeps the current value. State is untouched."""
        if failure_threshold:
            self.failure_threshold = int(failure_threshold)
        if recovery_timeout:
            self.recovery_timeout = int(recovery_timeout)
        if error_rate_threshold:
            self.error_rate_threshold = float(error_rate_threshold)

    @property
    def state(self) -> CircuitState:
        return self._state

    @state.setter
    def state(self, new_state: CircuitState):
        if new_state != self._state:
            old_state = self._state
            self._state = new_state
            self.last_state_change = datetime.now(timezone.utc)
            logger.info(f"[CircuitBreaker:{self.name}] {old_state.value} -> {new_state.value}")

    @property
    def error_rate(self) -> float:
        if not self._outcomes:
            return 0.0
        return self._outcomes.count(False) / len(self._outcomes)

    def get_retry_after_seconds(self) -> float:
        if self._state != CircuitState.OPEN or not self.last_failure_time:
            return 0
        elapsed = (datetime.now(timezone.utc) - self.last_failure_time).total_seconds()
        return max(0, self.recovery_timeout * self.backoff_multiplier - elapsed)

    def is_call_permitted(self) -> bool:
        if self._state != CircuitState.OPEN:
            return True
        if self.get_retry_after_seconds() <= 0:
            self.state = CircuitState.HALF_OPEN
            return True
        return False

    async def execute(self, func: Callable, *args, **kwargs) -> Any:
        """
        Run an async carrier call under the breaker.

        Raises:
            CircuitOpenError: the circuit is OPEN and the recovery wait has not elapsed
            Exception: whatever func raises, after it is counted as a failure
        """
        self.total_calls += 1

        if not self.is_call_permitted():
            self.total_blocked += 1
            retry_after = self.get_retry_after_seconds()
            logger.warning(f"[CircuitBreaker:{self.name}] call refused, retry after {retry_after:.0f}s")
            raise CircuitOpenError(self.name, retry_after)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def _on_success(self):
        self._outcomes.append(True)
        self.failure_count = 0
        if self._state == CircuitState.HALF_OPEN:
            self.state = CircuitState.CLOSED
            self.backoff_multiplier = 1
            self._outcomes.clear()

    def _on_failure(self, error: Exception):
        self._outcomes.append(False)
        self.failure_count += 1
        self.total_failures += 1
        self.last_failure_time = datetime.now(timezone.utc)

        if self._state == CircuitState.HALF_OPEN:
            self._open(f"trial call failed with {type(error).__name__}")
            return

        too_many = self.failure_count >= self.failure_threshold
        too_often = len(self._outcomes) >= self.MIN_CALLS and self.error_rate >= self.error_rate_threshold
        if self._state == CircuitState.CLOSED and (too_many or too_often):
            self._open(
                f"failures={self.failure_count}, error_rate={self.error_rate:.1%}, "
                f"error={type(error).__name__}"
            )

    def _open(self, reason: str):
        if self._state == CircuitState.HALF_OPEN:
            self.backoff_multiplier = min(self.backoff_multiplier * 2, self.MAX_BACKOFF_MULTIPLIER)
        self.state = CircuitState.OPEN
        logger.warning(
            f"[CircuitBreaker:{self.name}] OPENED for {self.recovery_timeout * self.backoff_multiplier}s: {reason}"
        )

    def reset(self):
        """Close the circuit and forget history (config reload, tests)."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.backoff_multiplier = 1
        self.last_failure_time = None
        self._outcomes.clear()

    def get_metrics(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self.failure_count,
            "error_rate": round(self.error_rate, 3),
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "backoff_multiplier": self.backoff_multiplier,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_blocked": self.total_blocked,
            "retry_after_seconds": self.get_retry_after_seconds(),
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
        }


_circuit_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get or create a breaker by name; kwargs only apply on creation."""
    if name not in _circuit_breakers:
        _circuit_breakers[name] = CircuitBreaker(name, **kwargs)
    return _circuit_breakers[name]


def carrier_breaker(carrier_code: str, settings, overrides: Optional[Dict[str, Any]] = None) -> CircuitBreaker:
    """
    The shared breaker for a carrier, with thresholds from Settings and the
    carrier's JSON config (which wins).
    """
    overrides = overrides or {}
    breaker = get_circuit_breaker(f"carrier:{carrier_code}", window=settings.CARRIER_BREAKER_WINDOW)
    breaker.configure(
        failure_threshold=overrides.get("breaker_failure_threshold") or settings.CARRIER_BREAKER_FAILURE_THRESHOLD,
        recovery_timeout=overrides.get("breaker_recovery_seconds") or settings.CARRIER_BREAKER_RECOVERY_SECONDS,
        error_rate_threshold=overrides.get("breaker_error_rate") or settings.CARRIER_BREAKER_ERROR_RATE,
    )
    return breaker


def get_all_circuit_breakers() -> Dict[str, CircuitBreaker]:
    return _circuit_breakers.copy()


def reset_all_circuit_breakers() -> None:
    """Reset every registered breaker (used on config reload and in tests)."""
    for breaker in _circuit_breakers.values():
        breaker.reset()
