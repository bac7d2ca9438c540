"""
Live subscription to the ledger's program logs.

``SubscriptionManager`` is an explicit state machine::

    stopped -> starting -> running <-> reconnecting -> stopped
                           running/reconnecting -> failed -> stopped

Timers and sleeps go through an injected ``Scheduler`` so reconnection can be
driven deterministically in tests.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Callable, Optional, Protocol

import structlog

from captable_mirror.config import IndexerConfig
from captable_mirror.contracts import LogBatch
from captable_mirror.errors import LedgerConnectionError

log = structlog.get_logger(__name__)

MAX_RECONNECT_DELAY_S = 60.0


class SubscriptionState(StrEnum):
    stopped = "stopped"
    starting = "starting"
    running = "running"
    reconnecting = "reconnecting"
    failed = "failed"


class Scheduler(Protocol):
    def call_every(self, interval_s: float, fn: Callable[[], None]) -> Callable[[], None]:
        """Run fn every interval_s seconds until the returned cancel function is called."""
        ...

    def sleep(self, seconds: float) -> None:
        ...


class ThreadingScheduler:
    """Daemon thread per periodic timer."""

    def call_every(self, interval_s: float, fn: Callable[[], None]) -> Callable[[], None]:
        cancelled = threading.Event()

        def _loop() -> None:
            while not cancelled.wait(interval_s):
                try:
                    fn()
                except Exception as exc:
                    log.error("scheduled_call_failed", error=str(exc))

        thread = threading.Thread(target=_loop, name="captable-timer", daemon=True)
        thread.start()
        return cancelled.set

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


@dataclass(frozen=True)
class SubscriptionStatus:
    is_running: bool
    last_processed_position: Optional[int]
    reconnect_attempts: int
    subscription_active: bool
    state: str


LogHandler = Callable[[LogBatch], Any]


class SubscriptionManager:
    def __init__(
        self,
        source: Any,
        program_id: str,
        handler: LogHandler,
        *,
        commitment: str = "confirmed",
        max_reconnect_attempts: int = 10,
        reconnect_delay_s: float = 5.0,
        reconnect_backoff: str = "fixed",
        health_check_interval_s: float = 30.0,
        scheduler: Optional[Scheduler] = None,
        on_max_reconnects: Optional[Callable[[str], None]] = None,
    ) -> None:
        if reconnect_backoff not in ("fixed", "exponential"):
            raise ValueError(f"unknown reconnect_backoff: {reconnect_backoff}")
        self.source = source
        self.program_id = program_id
        self.handler = handler
        self.commitment = commitment
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay_s = reconnect_delay_s
        self.reconnect_backoff = reconnect_backoff
        self.health_check_interval_s = health_check_interval_s
        self.scheduler: Scheduler = scheduler or ThreadingScheduler()
        self.on_max_reconnects = on_max_reconnects

        self._state = SubscriptionState.stopped
        self._state_lock = threading.Lock()
        self._handle: Any = None
        self._handle_lock = threading.Lock()
        self._reconnect_lock = threading.Lock()
        self._cancel_health_check: Optional[Callable[[], None]] = None
        self._stopped = threading.Event()
        self._stopped.set()

        self.last_processed_position: Optional[int] = None
        self.reconnect_attempts = 0
        self.last_error: Optional[str] = None

    @classmethod
    def from_config(
        cls, source: Any, handler: LogHandler, config: IndexerConfig, **kwargs: Any
    ) -> "SubscriptionManager":
        if not config.program_id:
            raise ValueError("program_id is required to subscribe")
        return cls(
            source,
            config.program_id,
            handler,
            commitment=config.commitment,
            max_reconnect_attempts=config.max_reconnect_attempts,
            reconnect_delay_s=config.reconnect_delay_s,
            reconnect_backoff=config.reconnect_backoff,
            health_check_interval_s=config.health_check_interval_s,
            **kwargs,
        )

    @property
    def state(self) -> SubscriptionState:
        return self._state

    # --- lifecycle --------------------------------------------------------

    def start(self) -> None:
        with self._state_lock:
            if self._state != SubscriptionState.stopped:
                log.info("subscription_already_started", state=str(self._state))
                return
            self._state = SubscriptionState.starting
            self._stopped.clear()

        try:
            self._probe()
            self._subscribe()
        except LedgerConnectionError:
            self._set_state(SubscriptionState.stopped)
            self._stopped.set()
            raise

        if not self._transition(SubscriptionState.starting, SubscriptionState.running):
            # stopped while subscribing
            self._release()
            self._stopped.set()
            return
        self.reconnect_attempts = 0
        self._cancel_health_check = self.scheduler.call_every(self.health_check_interval_s, self._health_check)
        log.info("subscription_started", program_id=self.program_id, commitment=self.commitment)

    def stop(self) -> None:
        with self._state_lock:
            if self._state == SubscriptionState.stopped and self._handle is None:
                return
            self._state = SubscriptionState.stopped
        if self._cancel_health_check is not None:
            self._cancel_health_check()
            self._cancel_health_check = None
        self._release()
        self._stopped.set()
        log.info("subscription_stopped", program_id=self.program_id)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the manager stops; True if it did within timeout."""
        return self._stopped.wait(timeout)

    def status(self) -> SubscriptionStatus:
        state = self._state
        return SubscriptionStatus(
            is_running=state in (SubscriptionState.running, SubscriptionState.reconnecting),
            last_processed_position=self.last_processed_position,
            reconnect_attempts=self.reconnect_attempts,
            subscription_active=self._handle is not None,
            state=str(state),
        )

    # --- callbacks --------------------------------------------------------

    def _on_logs(self, batch: LogBatch) -> None:
        if self._state != SubscriptionState.running:
            log.debug("log_batch_ignored", signature=batch.signature, state=str(self._state))
            return
        if self.last_processed_position is None or batch.slot > self.last_processed_position:
            self.last_processed_position = batch.slot
        try:
            self.handler(batch)
        except Exception as exc:
            log.error("log_handler_failed", signature=batch.signature, slot=batch.slot, error=str(exc))
            self._handle_failure(f"handler error: {exc}")
            return
        self.reconnect_attempts = 0

    def _on_subscription_error(self, exc: BaseException) -> None:
        if self._state != SubscriptionState.running:
            return
        log.error("subscription_error", program_id=self.program_id, error=str(exc))
        self._handle_failure(f"subscription error: {exc}")

    def _health_check(self) -> None:
        if self._state != SubscriptionState.running:
            return
        try:
            self._probe()
        except LedgerConnectionError as exc:
            log.warning("health_check_failed", error=exc.message)
            self._handle_failure(f"health check failed: {exc.message}")

    # --- reconnection -----------------------------------------------------

    def _handle_failure(self, reason: str) -> None:
        # a reconnect already in flight owns recovery
        if not self._reconnect_lock.acquire(blocking=False):
            return
        try:
            self.last_error = reason
            if not self._transition(SubscriptionState.running, SubscriptionState.reconnecting):
                return
            self._release()

            while True:
                if self._state != SubscriptionState.reconnecting:
                    return
                if self.reconnect_attempts >= self.max_reconnect_attempts:
                    self._fail()
                    return

                self.reconnect_attempts += 1
                delay = self._delay(self.reconnect_attempts)
                log.info(
                    "subscription_reconnecting",
                    attempt=self.reconnect_attempts,
                    max_attempts=self.max_reconnect_attempts,
                    delay_s=delay,
                    reason=reason,
                )
                self.scheduler.sleep(delay)
                if self._state != SubscriptionState.reconnecting:
                    return

                try:
                    self._probe()
                    self._subscribe()
                except LedgerConnectionError as exc:
                    reason = exc.message
                    log.warning("subscription_reconnect_failed", attempt=self.reconnect_attempts, error=exc.message)
                    continue

                if self._transition(SubscriptionState.reconnecting, SubscriptionState.running):
                    log.info("subscription_reconnected", attempt=self.reconnect_attempts)
                else:
                    # stopped while re-subscribing
                    self._release()
                return
        finally:
            self._reconnect_lock.release()

    def _fail(self) -> None:
        message = f"max reconnects reached ({self.max_reconnect_attempts})"
        self._set_state(SubscriptionState.failed)
        log.error("subscription_failed", program_id=self.program_id, reason=message, last_error=self.last_error)
        if self.on_max_reconnects is not None:
            try:
                self.on_max_reconnects(message)
            except Exception as exc:
                log.error("max_reconnects_callback_failed", error=str(exc))
        self.stop()

    def _delay(self, attempt: int) -> float:
        if self.reconnect_backoff == "exponential":
            return min(self.reconnect_delay_s * (2 ** (attempt - 1)), MAX_RECONNECT_DELAY_S)
        return self.reconnect_delay_s

    # --- source plumbing --------------------------------------------------

    def _probe(self) -> int:
        try:
            return int(self.source.get_slot(self.commitment))
        except LedgerConnectionError:
            raise
        except Exception as exc:
            raise LedgerConnectionError(f"liveness probe failed: {exc}") from exc

    def _subscribe(self) -> None:
        with self._handle_lock:
            try:
                self._handle = self.source.subscribe(
                    self.program_id, self.commitment, self._on_logs, self._on_subscription_error
                )
            except LedgerConnectionError:
                raise
            except Exception as exc:
                raise LedgerConnectionError(f"subscribe failed: {exc}") from exc

    def _release(self) -> None:
        with self._handle_lock:
            handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            self.source.unsubscribe(handle)
        except Exception as exc:
            log.warning("unsubscribe_failed", error=str(exc))

    def _set_state(self, state: SubscriptionState) -> None:
        with self._state_lock:
            self._state = state

    def _transition(self, expected: SubscriptionState, new: SubscriptionState) -> bool:
        with self._state_lock:
            if self._state != expected:
                return False
            self._state = new
            return True
