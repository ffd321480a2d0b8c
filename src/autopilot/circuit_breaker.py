"""Per-operation circuit breakers for the X API."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from .errors import AdmissionDenied, CircuitOpenError, ConfigurationError, UnknownBreakerError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class BreakerState:
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    state: CircuitState = CircuitState.CLOSED
    next_attempt_time: Optional[float] = None
    last_error: Optional[str] = None

    def reset(self) -> None:
        self.failure_count = 0
        self.last_failure_time = None
        self.state = CircuitState.CLOSED
        self.next_attempt_time = None
        self.last_error = None


@dataclass(frozen=True)
class BreakerSnapshot:
    state: CircuitState
    failure_count: int
    next_attempt_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "state": self.state.value,
            "failures": self.failure_count,
        }
        if self.next_attempt_time is not None:
            payload["nextAttempt"] = datetime.fromtimestamp(
                self.next_attempt_time, tz=timezone.utc
            ).isoformat()
        return payload


def counts_as_failure(exc: BaseException) -> bool:
    """Refusals and configuration errors say nothing about upstream health."""
    return not isinstance(exc, (AdmissionDenied, ConfigurationError))


class CircuitBreaker:
    """
    Failure-count guard around one upstream operation.

    CLOSED runs everything. ``failure_threshold`` failures open the circuit
    for ``timeout`` seconds, during which calls are rejected without running.
    After the timeout a single HALF_OPEN trial decides whether to close again
    or re-open. Results of calls admitted before the circuit left CLOSED do
    not decide the trial.

    Failures older than ``monitoring_period`` are forgotten: a failure that
    arrives after a quiet gap that long starts a fresh count. Exceptions for
    which ``is_failure`` returns False propagate without being counted.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        monitoring_period: float = 300.0,
        clock: Callable[[], float] = time.time,
        is_failure: Callable[[BaseException], bool] = counts_as_failure,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.monitoring_period = monitoring_period
        self._clock = clock
        self._is_failure = is_failure
        self._state = BreakerState()
        self._trial_in_flight = False

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        is_trial = self._admit()
        try:
            result = await operation()
        except Exception as exc:
            if self._is_failure(exc):
                self._on_failure(exc, is_trial)
            elif is_trial:
                # no verdict; the next caller gets the trial
                self._trial_in_flight = False
            raise
        except BaseException:
            if is_trial:
                self._trial_in_flight = False
            raise
        self._on_success(is_trial)
        return result

    def _admit(self) -> bool:
        """Raise CircuitOpenError or admit. Returns True for the HALF_OPEN trial."""
        state = self._state
        now = self._clock()

        if state.state == CircuitState.OPEN:
            if now < state.next_attempt_time:
                raise CircuitOpenError(self.name, state.next_attempt_time - now)
            self._transition(CircuitState.HALF_OPEN)

        if state.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True
            return True
        return False

    def _on_success(self, is_trial: bool) -> None:
        if not is_trial and self._state.state != CircuitState.CLOSED:
            logger.debug("Circuit '%s': ignoring late success from a pre-open call", self.name)
            return
        self._trial_in_flight = False
        self._state.failure_count = 0
        self._state.last_error = None
        if self._state.state != CircuitState.CLOSED:
            self._state.next_attempt_time = None
            self._transition(CircuitState.CLOSED)

    def _on_failure(self, exc: BaseException, is_trial: bool) -> None:
        state = self._state
        # a reset while the trial ran returns the circuit to CLOSED rules
        is_trial = is_trial and state.state == CircuitState.HALF_OPEN
        if not is_trial and state.state != CircuitState.CLOSED:
            logger.debug("Circuit '%s': ignoring late failure from a pre-open call: %s", self.name, exc)
            return

        now = self._clock()
        if is_trial:
            self._trial_in_flight = False
        elif (
            state.last_failure_time is not None
            and now - state.last_failure_time > self.monitoring_period
        ):
            state.failure_count = 0

        state.failure_count += 1
        state.last_failure_time = now
        state.last_error = str(exc)

        if is_trial or state.failure_count >= self.failure_threshold:
            state.next_attempt_time = now + self.timeout
            self._transition(CircuitState.OPEN)
            logger.warning(
                "Circuit '%s' opened after %d failures (last error: %s)",
                self.name, state.failure_count, state.last_error,
            )

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state.state
        if old_state == new_state:
            return
        self._state.state = new_state
        logger.info("Circuit '%s': %s -> %s", self.name, old_state.value, new_state.value)

    def reset(self) -> None:
        self._state.reset()
        self._trial_in_flight = False
        logger.info("Circuit '%s' reset", self.name)

    def get_state(self) -> BreakerSnapshot:
        state = self._state
        return BreakerSnapshot(
            state=state.state,
            failure_count=state.failure_count,
            next_attempt_time=(
                state.next_attempt_time if state.state == CircuitState.OPEN else None
            ),
        )

    @property
    def last_error(self) -> Optional[str]:
        return self._state.last_error


class CircuitBreakerRegistry:
    """Named breakers, built once at process start and passed to whoever needs them."""

    ALL = "all"

    def __init__(self, breakers: Iterable[CircuitBreaker] = ()) -> None:
        self._breakers: Dict[str, CircuitBreaker] = {}
        for breaker in breakers:
            self.add(breaker)

    @classmethod
    def from_config(cls, configs: Dict[str, Any], clock: Callable[[], float] = time.time) -> "CircuitBreakerRegistry":
        return cls(
            CircuitBreaker(
                name,
                failure_threshold=cfg.fails,
                timeout=cfg.timeout_sec,
                monitoring_period=cfg.monitoring_period_sec,
                clock=clock,
            )
            for name, cfg in configs.items()
        )

    def add(self, breaker: CircuitBreaker) -> None:
        self._breakers[breaker.name] = breaker

    def get(self, name: str) -> CircuitBreaker:
        try:
            return self._breakers[name]
        except KeyError:
            available = ", ".join(self.names() + [self.ALL])
            raise UnknownBreakerError(
                f"Invalid circuit breaker name '{name}'. Available: {available}"
            ) from None

    def names(self) -> List[str]:
        return list(self._breakers)

    def states(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_state().to_dict() for name, breaker in self._breakers.items()}

    def summary(self) -> Dict[str, int]:
        states = [breaker.get_state().state for breaker in self._breakers.values()]
        return {
            "totalCircuits": len(states),
            "openCircuits": states.count(CircuitState.OPEN),
            "closedCircuits": states.count(CircuitState.CLOSED),
            "halfOpenCircuits": states.count(CircuitState.HALF_OPEN),
        }

    def reset(self, name: str) -> List[str]:
        """Reset one breaker, or every breaker for ``"all"``. Returns the names reset."""
        if name == self.ALL:
            for breaker in self._breakers.values():
                breaker.reset()
            return self.names()
        self.get(name).reset()
        return [name]
