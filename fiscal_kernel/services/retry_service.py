"""
RetryService -- bounded exponential-backoff retries with per-endpoint circuit breakers.

Responsibility:
    Wraps a zero-argument callable so that transient failures of the
    distribution API are retried with jittered exponential backoff, and a
    persistently failing endpoint is short-circuited for a cooldown window.

Architecture position:
    Kernel > Services -- imperative shell.  Consumed by the distribution API
    client; knows nothing about documents or tenants.

Invariants enforced:
    - A run makes at most ``max_retries + 1`` attempts; the final error is
      re-raised unchanged.
    - A failure that opens the circuit ends the run at once; that
      attempt's error is re-raised, with no further sleep.
    - The circuit is consulted before EVERY attempt.  An open circuit raises
      ``CircuitOpenError`` without invoking the operation.
    - Every failed attempt (other than a circuit rejection) counts against
      the circuit; any success closes it.
    - In ``half_open`` exactly one probe is admitted.  Other callers fail
      fast until the probe resolves.
    - Circuit state is process-local and guarded by a ``threading.Lock``.

Failure modes:
    - CircuitOpenError: circuit open, or half-open with a probe in flight.
    - Whatever the operation raised, after exhaustion or when the error is
      not retryable.

Audit relevance:
    None directly.  ``circuit_opened`` / ``circuit_closed`` log events are
    the operational trail.
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_any,
)
from tenacity.wait import wait_base

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.exceptions import CircuitOpenError
from fiscal_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404, 422})

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_SECONDS = 60.0
JITTER_RATIO = 0.25


@dataclass(frozen=True)
class RetryOptions:
    """Per-call retry policy.  Delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_codes: frozenset[str] | None = None

    def delay_for(self, retry_index: int) -> float:
        """Un-jittered delay before retry ``retry_index`` (0-based)."""
        return min(
            self.max_delay,
            self.base_delay * (self.backoff_multiplier ** retry_index),
        )


def _status_code_of(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def is_retryable_error(
    error: BaseException,
    retryable_codes: Iterable[str] | None = None,
) -> bool:
    """
    Classify an error as retryable.

    Network-level failures and 429/5xx are retryable.  Client errors and
    circuit rejections are not.  Anything else is retryable unless an
    allow-list is given, in which case its ``code`` (or class name) must
    appear in it.
    """
    if isinstance(error, CircuitOpenError):
        return False
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True

    status = _status_code_of(error)
    if status is not None:
        if status in RETRYABLE_STATUS_CODES:
            return True
        if status in NON_RETRYABLE_STATUS_CODES or 400 <= status < 500:
            return False

    if retryable_codes is not None:
        code = getattr(error, "code", None) or type(error).__name__
        return code in set(retryable_codes)
    return True


# =============================================================================
# Circuit breaker
# =============================================================================


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    """Mutable per-endpoint state.  Only touched under the registry lock."""

    failure_count: int = 0
    last_failure_at: datetime | None = None
    state: CircuitState = CircuitState.CLOSED
    probe_in_flight: bool = False


@dataclass(frozen=True)
class CircuitSnapshot:
    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: datetime | None


class CircuitBreakerRegistry:
    """
    Named circuit breakers sharing one lock and one clock.

    Contract:
        ``before_call(name)`` either returns (call may proceed) or raises
        ``CircuitOpenError``.  The caller must then report the outcome with
        ``record_success`` or ``record_failure``.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_seconds: float = DEFAULT_RECOVERY_SECONDS,
    ):
        self._clock = clock or SystemClock()
        self._failure_threshold = failure_threshold
        self._recovery_seconds = recovery_seconds
        self._circuits: dict[str, CircuitBreakerState] = {}
        self._lock = threading.Lock()

    @property
    def failure_threshold(self) -> int:
        return self._failure_threshold

    @property
    def recovery_seconds(self) -> float:
        return self._recovery_seconds

    def configure(self, failure_threshold: int, recovery_seconds: float) -> None:
        """Apply new thresholds; existing circuit states are kept."""
        with self._lock:
            self._failure_threshold = failure_threshold
            self._recovery_seconds = recovery_seconds

    def _get(self, name: str) -> CircuitBreakerState:
        circuit = self._circuits.get(name)
        if circuit is None:
            circuit = CircuitBreakerState()
            self._circuits[name] = circuit
        return circuit

    def _seconds_since_failure(self, circuit: CircuitBreakerState) -> float:
        if circuit.last_failure_at is None:
            return self._recovery_seconds
        return (self._clock.now() - circuit.last_failure_at).total_seconds()

    def before_call(self, name: str) -> None:
        with self._lock:
            circuit = self._get(name)

            if circuit.state == CircuitState.CLOSED:
                return

            if circuit.state == CircuitState.HALF_OPEN:
                if circuit.probe_in_flight:
                    raise CircuitOpenError(name, 0.0)
                circuit.probe_in_flight = True
                return

            elapsed = self._seconds_since_failure(circuit)
            if elapsed < self._recovery_seconds:
                raise CircuitOpenError(name, self._recovery_seconds - elapsed)

            circuit.state = CircuitState.HALF_OPEN
            circuit.probe_in_flight = True

        logger.info("circuit_half_open", extra={"circuit": name})

    def record_success(self, name: str) -> None:
        with self._lock:
            circuit = self._get(name)
            was_closed = circuit.state == CircuitState.CLOSED
            circuit.failure_count = 0
            circuit.state = CircuitState.CLOSED
            circuit.probe_in_flight = False

        if not was_closed:
            logger.info("circuit_closed", extra={"circuit": name})

    def record_failure(self, name: str) -> None:
        with self._lock:
            circuit = self._get(name)
            circuit.failure_count += 1
            circuit.last_failure_at = self._clock.now()
            circuit.probe_in_flight = False

            opened = False
            if circuit.state == CircuitState.HALF_OPEN:
                circuit.state = CircuitState.OPEN
                opened = True
            elif (
                circuit.state == CircuitState.CLOSED
                and circuit.failure_count >= self._failure_threshold
            ):
                circuit.state = CircuitState.OPEN
                opened = True
            failure_count = circuit.failure_count

        if opened:
            logger.warning(
                "circuit_opened",
                extra={"circuit": name, "failure_count": failure_count},
            )

    def state_of(self, name: str) -> CircuitState:
        with self._lock:
            return self._get(name).state

    def snapshot(self) -> dict[str, CircuitSnapshot]:
        with self._lock:
            return {
                name: CircuitSnapshot(
                    name=name,
                    state=circuit.state,
                    failure_count=circuit.failure_count,
                    last_failure_at=circuit.last_failure_at,
                )
                for name, circuit in self._circuits.items()
            }

    def reset(self) -> None:
        with self._lock:
            self._circuits.clear()


_default_registry = CircuitBreakerRegistry()


def get_circuit_registry() -> CircuitBreakerRegistry:
    """The process-wide registry used when none is injected."""
    return _default_registry


def reset_circuit_breakers() -> None:
    """Clear every process-wide circuit.  Intended for tests and operators."""
    _default_registry.reset()


# =============================================================================
# Retry
# =============================================================================


class _JitteredExponentialWait(wait_base):
    """min(max_delay, base * multiplier**n) with +/-25% uniform jitter."""

    def __init__(self, options: RetryOptions, rng: random.Random):
        self._options = options
        self._rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._options.delay_for(retry_state.attempt_number - 1)
        jitter = delay * JITTER_RATIO * (2 * self._rng.random() - 1)
        return max(0.0, delay + jitter)


class RetryService:
    """
    Executes operations under a retry policy and an optional named circuit.

    Sleep, clock (through the registry) and random source are injectable
    so tests run without real delays.
    """

    def __init__(
        self,
        registry: CircuitBreakerRegistry | None = None,
        default_options: RetryOptions | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ):
        self._registry = registry or get_circuit_registry()
        self._default_options = default_options or RetryOptions()
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def registry(self) -> CircuitBreakerRegistry:
        return self._registry

    def execute(
        self,
        operation: Callable[[], T],
        options: RetryOptions | None = None,
        circuit_name: str | None = None,
    ) -> T:
        opts = options or self._default_options
        total_attempts = opts.max_retries + 1

        def _is_retryable(error: BaseException) -> bool:
            return is_retryable_error(error, opts.retryable_codes)

        def _log_scheduled(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.info(
                "retry_scheduled",
                extra={
                    "circuit": circuit_name,
                    "attempt": retry_state.attempt_number,
                    "max_attempts": total_attempts,
                    "delay_seconds": round(retry_state.next_action.sleep, 3)
                    if retry_state.next_action
                    else None,
                    "error": str(error) if error else None,
                },
            )

        def _circuit_opened(retry_state: RetryCallState) -> bool:
            return (
                circuit_name is not None
                and self._registry.state_of(circuit_name) == CircuitState.OPEN
            )

        retrying = Retrying(
            stop=stop_any(stop_after_attempt(total_attempts), _circuit_opened),
            wait=_JitteredExponentialWait(opts, self._rng),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=_log_scheduled,
            reraise=True,
        )

        attempt_number = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    result = self._attempt(operation, circuit_name)
                # Success leaves the loop on the next iteration
        except Exception as exc:
            if _is_retryable(exc) and attempt_number < total_attempts:
                logger.warning(
                    "retry_stopped_circuit_open",
                    extra={
                        "circuit": circuit_name,
                        "attempts": attempt_number,
                        "error": str(exc),
                    },
                )
            elif _is_retryable(exc):
                logger.warning(
                    "retry_exhausted",
                    extra={
                        "circuit": circuit_name,
                        "attempts": attempt_number,
                        "error": str(exc),
                    },
                )
            raise
        return result

    def _attempt(self, operation: Callable[[], T], circuit_name: str | None) -> T:
        if circuit_name is None:
            return operation()

        self._registry.before_call(circuit_name)
        try:
            result = operation()
        except Exception:
            self._registry.record_failure(circuit_name)
            raise
        self._registry.record_success(circuit_name)
        return result

    def snapshot(self) -> dict[str, Any]:
        """Circuit states keyed by name, JSON-friendly."""
        return {
            name: {
                "state": snap.state.value,
                "failure_count": snap.failure_count,
                "last_failure_at": snap.last_failure_at.isoformat()
                if snap.last_failure_at
                else None,
            }
            for name, snap in self._registry.snapshot().items()
        }
