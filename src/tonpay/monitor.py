"""Repeating poll task for approval detection and human decisions."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from .approvals import ApprovalRecord
from .coordinator import Coordinator

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    created: list[ApprovalRecord] = field(default_factory=list)
    actions_handled: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class PollLoop:
    """Drives ``Coordinator.poll_once`` on an interval.

    ``tick`` runs exactly one cycle. ``run`` first marks historical
    transactions as seen (on a fresh state only), then repeats ticks until
    the stop event is set; ``start``/``stop`` wrap it in a daemon thread. A
    failing tick is logged and the loop keeps going.
    """

    def __init__(self, coordinator: Coordinator, interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than 0")
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._bootstrapped = False

    def bootstrap(self) -> None:
        if self._bootstrapped:
            return
        try:
            self.coordinator.bootstrap()
        except Exception:
            logger.exception("Failed to bootstrap seen transactions")
            return
        self._bootstrapped = True

    def tick(self) -> TickResult:
        result = TickResult()

        try:
            result.created = self.coordinator.poll_once()
        except Exception as e:
            logger.exception("Failed to poll contract")
            result.errors.append(f"poll: {e}")

        try:
            result.actions_handled = self.coordinator.process_channel_actions()
        except Exception as e:
            logger.exception("Failed to process approval channel actions")
            result.errors.append(f"actions: {e}")

        if result.created:
            logger.info("Detected %d new approval request(s)", len(result.created))
        return result

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        stop = stop_event or self._stop
        self.bootstrap()
        logger.info("Monitoring contract for approval requests every %.1fs", self.interval_seconds)
        while not stop.is_set():
            self.tick()
            stop.wait(self.interval_seconds)

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Poll loop already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="tonpay-poll", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
