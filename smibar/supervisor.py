"""Connection supervisor: polls the active target and tracks session health."""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from smibar.errors import INVALID_TARGET, RemoteQueryError, classify
from smibar.events import EVENT_ERROR, EVENT_META, EVENT_SNAPSHOT, EventSink
from smibar.logging_config import sanitize_for_logging
from smibar.metrics import (
    CONNECTION_STATUS,
    CONSECUTIVE_FAILURES,
    POLL_ATTEMPTS_TOTAL,
    POLL_FAILURES_TOTAL,
    QUERY_DURATION,
    clear_gpu_metrics,
    record_snapshot,
)
from smibar.models import (
    ConnectionMetadata,
    ConnectionState,
    ConnectionStatus,
    GPUSnapshot,
    ProbeResult,
)

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_SCHEDULE = (2, 5, 10, 20, 30)
DEFAULT_ERROR_AFTER_FAILURES = 6


class GPUQueryClient(Protocol):
    def query(self, target: str, port: int = 0) -> GPUSnapshot:
        ...


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry delays and the point at which a stale session becomes an error.

    Attributes:
        schedule: Delay in seconds after the 1st, 2nd, ... consecutive failure;
                  the last entry repeats for every failure beyond the table
        error_after_failures: Consecutive failures after which a session that
                              has succeeded before is reported as "error"
                              instead of "stale"
    """

    schedule: tuple[int, ...] = DEFAULT_BACKOFF_SCHEDULE
    error_after_failures: int = DEFAULT_ERROR_AFTER_FAILURES

    def delay_for(self, failures: int) -> int:
        if failures < 1:
            return 0
        return self.schedule[min(failures, len(self.schedule)) - 1]

    def status_after_failure(self, has_succeeded: bool, failures: int) -> ConnectionStatus:
        if has_succeeded and failures < self.error_after_failures:
            return ConnectionStatus.STALE
        return ConnectionStatus.ERROR


class ConnectionSupervisor:
    """Drives the poll cycle for exactly one active target.

    A single background thread wakes every poll_interval seconds, or as soon
    as set_target()/retry_now() ask for it, and runs poll_once(). Results go
    to the event sink as "gpu:data" / "gpu:error" followed by "gpu:conn_meta".

    Status transitions:
        - no target                         -> idle
        - target changed / set again        -> connecting (attempt forced)
        - success                           -> live
        - failure, succeeded before, < N    -> stale
        - failure otherwise                 -> error

    After a failure the next attempt waits for the backoff deadline unless a
    wake is forced. Forced wakes coalesce: requesting one while another is
    pending adds nothing.
    """

    def __init__(
        self,
        client: GPUQueryClient,
        sink: EventSink,
        policy: Optional[BackoffPolicy] = None,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._sink = sink
        self.policy = policy or BackoffPolicy()
        self.poll_interval = poll_interval
        self._clock = clock

        # Guarded by _lock
        self._lock = threading.Lock()
        self._target = ""
        self._port = 0
        self._generation = 0
        self._wake_pending = False
        self._state = ConnectionState()
        self._session: Optional[tuple[str, int, int]] = None

        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # Public API

    def set_target(self, host: str, port: int = 0) -> None:
        """Switch to host:port (empty host disconnects) and poll immediately."""
        host = (host or "").strip()
        port = port if port > 0 else 0
        with self._lock:
            self._target = host
            self._port = port
            self._generation += 1
            self._state.reset(host, port)
        if host:
            logger.info(f"Active target set to {host}" + (f" port {port}" if port else ""))
        else:
            logger.info("Active target cleared")
        self._request_wake()

    def retry_now(self) -> None:
        """Attempt immediately, ignoring any pending backoff deadline."""
        logger.debug("Immediate retry requested")
        self._request_wake()

    def test_target(self, host: str, port: int = 0) -> ProbeResult:
        """One-shot probe of host:port. Does not touch the active session."""
        host = (host or "").strip()
        if not host:
            return ProbeResult(success=False, code=INVALID_TARGET, message="Target is required")

        try:
            snapshot = self._client.query(host, port if port > 0 else 0)
        except RemoteQueryError as e:
            classified = classify(str(e))
            logger.info(f"Test of {host} failed: {classified.code}")
            return ProbeResult(success=False, code=classified.code, message=classified.message)

        return ProbeResult(
            success=True,
            message=f"Connected: {len(snapshot)} GPU(s) found",
            gpu_count=len(snapshot),
        )

    def metadata(self) -> ConnectionMetadata:
        with self._lock:
            return self._metadata_locked(self._clock())

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background poll worker."""
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="smibar-poll", daemon=True)
        self._thread.start()
        logger.info(f"Poll worker started: interval={self.poll_interval}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Ask the worker to exit at its next wake point and wait for it.

        An in-flight query is not cancelled; it finishes or times out first.
        """
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Poll worker still busy with a query at shutdown")
            self._thread = None

    # Poll cycle

    def poll_once(self, forced: bool = False) -> None:
        """Run one poll cycle. forced bypasses any pending backoff deadline."""
        captured = self._begin_cycle(forced)
        if captured is None:
            return
        target, port, generation = captured

        started = time.monotonic()
        try:
            snapshot = self._client.query(target, port)
        except RemoteQueryError as e:
            QUERY_DURATION.observe(time.monotonic() - started)
            self._record_failure(generation, target, e)
        else:
            QUERY_DURATION.observe(time.monotonic() - started)
            self._record_success(generation, target, snapshot)

    def _begin_cycle(self, forced: bool) -> Optional[tuple[str, int, int]]:
        """Decide whether this wake issues a query; emits meta when it does not.

        Returns the captured (target, port, generation), or None to skip.
        """
        now = self._clock()
        session_changed = False
        with self._lock:
            target, port, generation = self._target, self._port, self._generation
            session = (target, port, generation)
            if session != self._session:
                self._session = session
                self._state.reset(target, port)
                session_changed = True
                forced = True

            state = self._state
            announce = False
            if not target:
                state.reset()
                skip = True
            else:
                deadline = state.next_retry_deadline
                skip = not forced and deadline is not None and deadline > now
                if not skip and not state.has_succeeded:
                    state.status = ConnectionStatus.CONNECTING
                    announce = True
            meta = self._metadata_locked(now)

        if session_changed:
            clear_gpu_metrics()
        # Idle, waiting out a backoff, or announcing the attempt in flight.
        if skip or announce:
            self._publish_meta(meta)
        return None if skip else (target, port, generation)

    def _record_success(self, generation: int, target: str, snapshot: GPUSnapshot) -> None:
        now = self._clock()
        with self._lock:
            if generation != self._generation:
                logger.debug(f"Discarding result for {target}: target changed mid-query")
                return
            state = self._state
            recovered = state.consecutive_failures > 0
            state.consecutive_failures = 0
            state.next_retry_deadline = None
            state.last_success_time = now
            state.last_error_code = ""
            state.last_error_message = ""
            state.status = ConnectionStatus.LIVE
            meta = self._metadata_locked(now)

        if recovered:
            logger.info(f"{target}: connection recovered")
        POLL_ATTEMPTS_TOTAL.labels(outcome="success").inc()
        record_snapshot(snapshot)
        self._sink.emit(EVENT_SNAPSHOT, snapshot.to_list())
        self._publish_meta(meta)

    def _record_failure(self, generation: int, target: str, error: RemoteQueryError) -> None:
        classified = classify(str(error))
        now = self._clock()
        with self._lock:
            if generation != self._generation:
                logger.debug(f"Discarding failure for {target}: target changed mid-query")
                return
            state = self._state
            state.consecutive_failures += 1
            state.last_error_code = classified.code
            state.last_error_message = classified.message
            delay = self.policy.delay_for(state.consecutive_failures)
            state.next_retry_deadline = now + delay
            state.status = self.policy.status_after_failure(
                state.has_succeeded, state.consecutive_failures
            )
            failures = state.consecutive_failures
            meta = self._metadata_locked(now)

        logger.warning(
            f"{target}: query failed ({classified.code}, attempt {failures}), "
            f"retrying in {delay}s: {sanitize_for_logging(str(error))}"
        )
        POLL_ATTEMPTS_TOTAL.labels(outcome="failure").inc()
        POLL_FAILURES_TOTAL.labels(error_code=classified.code).inc()
        self._sink.emit(EVENT_ERROR, classified.message)
        self._publish_meta(meta)

    def _metadata_locked(self, now: float) -> ConnectionMetadata:
        state = self._state
        next_retry_in = 0
        if state.next_retry_deadline is not None and state.next_retry_deadline > now:
            next_retry_in = max(1, math.ceil(state.next_retry_deadline - now))
        return ConnectionMetadata(
            status=state.status,
            last_success_ts=int(state.last_success_time) if state.last_success_time else 0,
            consecutive_failures=state.consecutive_failures,
            next_retry_in_sec=next_retry_in,
            error_code=state.last_error_code,
            error_message=state.last_error_message,
            active_target=state.active_target,
            active_port=state.active_port,
        )

    def _publish_meta(self, meta: ConnectionMetadata) -> None:
        CONNECTION_STATUS.state(meta.status.value)
        CONSECUTIVE_FAILURES.set(meta.consecutive_failures)
        self._sink.emit(EVENT_META, meta.to_dict())

    # Worker

    def _request_wake(self) -> None:
        with self._lock:
            self._wake_pending = True
            self._wake.set()

    def _take_wake(self) -> bool:
        with self._lock:
            forced = self._wake_pending
            self._wake_pending = False
            self._wake.clear()
            return forced

    def _run(self) -> None:
        forced = self._take_wake()
        while not self._stop.is_set():
            try:
                self.poll_once(forced=forced)
            except Exception as e:
                logger.error(f"Poll cycle error: {e}", exc_info=True)
            self._wake.wait(self.poll_interval)
            if self._stop.is_set():
                break
            forced = self._take_wake()
        logger.info("Poll worker stopped")
