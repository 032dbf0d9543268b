"""
RoundScheduler - background loop that drives the round lifecycle.

Every tick:
1. open a period for any mode left without an active round
2. lock every OPEN round whose lock time has passed
3. settle LOCKED rounds, retrying failures with exponential backoff
4. raise an alert (ERROR log) for rounds stuck LOCKED past the ceiling

A stuck round is only reported, never resolved by guessing a result.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from core.engine import WageringEngine
from core.exceptions import TransientError

logger = logging.getLogger(__name__)


@dataclass
class RetryState:
    attempts: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None


class RoundScheduler:
    """One daemon thread per process, shared by all modes."""

    def __init__(
        self,
        engine: WageringEngine,
        session_factory: Callable[[], Session],
        tick_seconds: float = 1.0,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 60.0,
        stuck_alert_seconds: int = 120,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.engine = engine
        self.session_factory = session_factory
        self.tick_seconds = tick_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stuck_alert_seconds = stuck_alert_seconds
        self._monotonic = monotonic

        self._retries: Dict[Tuple[str, int], RetryState] = {}
        self._last_alert: Dict[Tuple[str, int], float] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(cls, engine: WageringEngine, session_factory, settings) -> "RoundScheduler":
        return cls(
            engine,
            session_factory,
            tick_seconds=settings.scheduler_tick_seconds,
            retry_base_seconds=settings.settlement_retry_base_seconds,
            retry_max_seconds=settings.settlement_retry_max_seconds,
            stuck_alert_seconds=settings.stuck_round_alert_seconds,
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            logger.warning("RoundScheduler already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="RoundScheduler",
            daemon=True
        )
        self._thread.start()
        logger.info("RoundScheduler started")

    def stop(self, timeout: float = 10.0):
        if not self.running:
            return

        logger.info("Stopping RoundScheduler...")
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("RoundScheduler stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            self._stop_event.wait(self.tick_seconds)

    def tick(self) -> List[Tuple[str, int]]:
        """
        Run one scheduling pass.

        Returns:
            (mode_id, period_number) of every round settled in this pass
        """
        settled = []
        db = self.session_factory()
        try:
            clock = self.engine.clock
            clock.ensure_active(db)
            clock.lock_due(db)

            locked = clock.locked_rounds(db)
            self._forget_finished({(r.mode_id, r.period_number) for r in locked})

            for round_obj in locked:
                key = (round_obj.mode_id, round_obj.period_number)
                if self._try_settle(db, *key):
                    settled.append(key)

            self._alert_stuck(db)
        finally:
            db.close()
        return settled

    def _try_settle(self, db: Session, mode_id: str, period_number: int) -> bool:
        key = (mode_id, period_number)
        state = self._retries.get(key)
        now = self._monotonic()
        if state is not None and now < state.next_attempt_at:
            return False

        try:
            report = self.engine.settlement.settle(db, mode_id, period_number)
        except TransientError as e:
            self._schedule_retry(key, e, now)
            logger.warning(f"Settlement of {mode_id}#{period_number} will be retried: {e}")
            return False
        except Exception as e:
            self._schedule_retry(key, e, now)
            logger.error(f"Settlement of {mode_id}#{period_number} failed: {e}", exc_info=True)
            return False

        self._retries.pop(key, None)
        self._last_alert.pop(key, None)
        return report.settled

    def _schedule_retry(self, key, error: Exception, now: float) -> RetryState:
        state = self._retries.setdefault(key, RetryState())
        state.attempts += 1
        delay = min(
            self.retry_base_seconds * (2 ** (state.attempts - 1)),
            self.retry_max_seconds
        )
        state.next_attempt_at = now + delay
        state.last_error = str(error)
        return state

    def _forget_finished(self, still_locked) -> None:
        """Drop retry and alert entries of rounds settled elsewhere (e.g. the admin API)."""
        for key in [k for k in self._retries if k not in still_locked]:
            del self._retries[key]
        for key in [k for k in self._last_alert if k not in still_locked]:
            del self._last_alert[key]

    def retry_state(self, mode_id: str, period_number: int) -> Optional[RetryState]:
        return self._retries.get((mode_id, period_number))

    def _alert_stuck(self, db: Session) -> None:
        now = self._monotonic()
        for round_obj in self.engine.clock.stuck_rounds(db, self.stuck_alert_seconds):
            key = (round_obj.mode_id, round_obj.period_number)
            last = self._last_alert.get(key)
            if last is not None and now - last < self.stuck_alert_seconds:
                continue
            self._last_alert[key] = now
            state = self._retries.get(key)
            logger.error(
                f"ALERT: round {key[0]}#{key[1]} stuck LOCKED since "
                f"{round_obj.locked_at.isoformat()} "
                f"(attempts={state.attempts if state else 0}, "
                f"last_error={state.last_error if state else None})"
            )
