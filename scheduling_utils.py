import json
import logging
import math
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Tuple

from notification_utils import build_passport_payload, build_status_payload
from status_errors import DataError, StatusCheckError, TransportError
from status_models import Application


class AttemptDeadline:
    """Wall-clock budget shared by every blocking step of one scrape or track attempt."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


def bounded_timeout(timeout: float, deadline: Optional[AttemptDeadline]) -> float:
    if deadline is None:
        return timeout
    return min(timeout, deadline.remaining())


def compute_sleep_seconds(*, interval_seconds: float, elapsed_seconds: float) -> Tuple[float, int]:
    """Return the wait until the next tick boundary and how many ticks were missed."""
    interval_seconds = max(1.0, interval_seconds)
    ticks_ahead = max(1, math.ceil(elapsed_seconds / interval_seconds))
    sleep_seconds = ticks_ahead * interval_seconds - elapsed_seconds
    return max(0.0, sleep_seconds), ticks_ahead - 1


@dataclass
class SweepReport:
    applications: int = 0
    scraped: int = 0
    changed: int = 0
    tracked: int = 0
    notified: int = 0
    failures: int = 0
    skipped_records: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class StatusScheduler:
    """Runs a sweep over every registered application on a fixed interval.

    Only one sweep runs at a time; a tick that arrives while a sweep is still
    in progress is skipped rather than queued.
    """

    def __init__(
        self,
        *,
        registry,
        checker,
        tracker,
        dispatcher,
        tracking=None,
        key_prefix: str = "application:status:",
        interval_seconds: float = 60,
        attempt_deadline_seconds: float = 300,
        email_tracking_enabled: bool = True,
        heartbeat_path: Optional[str] = None,
    ) -> None:
        self.registry = registry
        self.checker = checker
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.tracking = tracking
        self.key_prefix = key_prefix
        self.interval_seconds = interval_seconds
        self.attempt_deadline_seconds = attempt_deadline_seconds
        self.email_tracking_enabled = email_tracking_enabled and tracking is not None
        self._heartbeat_path = Path(heartbeat_path).expanduser() if heartbeat_path else None
        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="status-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_forever(self) -> None:
        logging.info("Scheduler started; sweeping every %.0f seconds", self.interval_seconds)
        while not self._stop.is_set():
            started = time.monotonic()
            self.run_sweep()
            sleep_seconds, missed = compute_sleep_seconds(
                interval_seconds=self.interval_seconds,
                elapsed_seconds=time.monotonic() - started,
            )
            if missed:
                logging.warning(
                    "Sweep overran the %.0fs interval; skipping %s tick(s)", self.interval_seconds, missed
                )
            if self._stop.wait(sleep_seconds):
                break
        logging.info("Scheduler stopped")

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------
    def run_sweep(self) -> Optional[SweepReport]:
        if not self._sweep_lock.acquire(blocking=False):
            logging.warning("Previous sweep still running; skipping this tick")
            return None

        report = SweepReport()
        try:
            logging.info("Starting sweep over registry prefix %s", self.key_prefix)
            try:
                for app in self._iter_applications(report):
                    report.applications += 1
                    self._check_website(app, report)
                    if self.email_tracking_enabled:
                        self._check_passport(app, report)
            except TransportError as exc:
                report.failures += 1
                logging.error("Registry unavailable; sweep ended early: %s", exc)

            logging.info("Sweep finished: %s", report.as_dict())
            self._update_heartbeat(report)
            return report
        finally:
            self._sweep_lock.release()

    def _iter_applications(self, report: SweepReport) -> Iterator[Application]:
        for key in self.registry.scan_all(self.key_prefix):
            raw = self.registry.get(key)
            if raw is None:
                logging.info("Registry record %s vanished during the sweep; skipping", key)
                report.skipped_records += 1
                continue
            try:
                yield Application.from_record(raw)
            except DataError as exc:
                logging.warning("Skipping malformed registry record %s: %s", key, exc)
                report.skipped_records += 1

    def _check_website(self, app: Application, report: SweepReport) -> None:
        try:
            snapshot = self.checker.scrape(app, deadline=AttemptDeadline(self.attempt_deadline_seconds))
        except StatusCheckError as exc:
            report.failures += 1
            logging.warning("Status check failed for %s: %s", app.application_id, exc)
            return
        except Exception as exc:  # noqa: BLE001
            report.failures += 1
            logging.exception("Unexpected error checking %s: %s", app.application_id, exc)
            return

        report.scraped += 1
        if not self.tracker.update_status(app.application_id, snapshot):
            logging.info("No status change for %s (%s)", app.application_id, snapshot.status)
            return

        report.changed += 1
        logging.info("Status changed for %s: %s", app.application_id, snapshot.status)
        self._dispatch(build_status_payload(app, snapshot), report)

    def _check_passport(self, app: Application, report: SweepReport) -> None:
        # Not gated by the tracker: every sweep reports the latest reply.
        try:
            snapshot = self.tracking.track(app, deadline=AttemptDeadline(self.attempt_deadline_seconds))
        except StatusCheckError as exc:
            report.failures += 1
            logging.warning("Passport tracking failed for %s: %s", app.application_id, exc)
            return
        except Exception as exc:  # noqa: BLE001
            report.failures += 1
            logging.exception("Unexpected error tracking passport for %s: %s", app.application_id, exc)
            return

        report.tracked += 1
        self._dispatch(build_passport_payload(app, snapshot), report)

    def _dispatch(self, payload, report: SweepReport) -> None:
        try:
            self.dispatcher.send(payload)
        except TransportError as exc:
            report.failures += 1
            logging.error("Notification for %s not delivered: %s", payload.user_name, exc)
            return
        report.notified += 1

    def _update_heartbeat(self, report: SweepReport) -> None:
        if not self._heartbeat_path:
            return

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "status": "success" if not report.failures else "failure",
            "report": report.as_dict(),
        }

        try:
            self._heartbeat_path.parent.mkdir(parents=True, exist_ok=True)
            self._heartbeat_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            logging.debug("Failed to write heartbeat file: %s", exc)
