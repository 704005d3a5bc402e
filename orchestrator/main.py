"""Central orchestration entry point for the telehealth booking service."""
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

if __package__ is None or __package__ == "":  # pragma: no cover - runtime safety for script execution
    sys.path.append(str(Path(__file__).resolve().parent.parent))

from agents.appointments import BookingAgent
from agents.reminders import ReminderAgent
from connector import (
    FHIRClient,
    FHIRPatientDirectory,
    InMemoryAppointmentStore,
    SQLiteAppointmentStore,
    calendar_from_env,
    notifier_from_env,
)
from scheduling.config import SchedulingConfig

LOG_PATH = Path(os.getenv("BOOKING_TASK_LOG", str(Path(__file__).resolve().parent / "task_log.json")))
REMINDER_INTERVAL_MINUTES = 5

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")


class TaskLogger:
    """Persists orchestration events into a JSON log."""

    def __init__(self, log_path: Path) -> None:
        self._log_path = log_path
        self._lock = threading.Lock()
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._log_path

    def log(
        self,
        task_name: str,
        status: str,
        *,
        start_time: Optional[datetime] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, object]] = None,
    ) -> None:
        completed_at = _utc_now()
        started_at = start_time or completed_at
        entry: Dict[str, object] = {
            "task": task_name,
            "status": status,
            "started_at": _format_timestamp(started_at),
            "completed_at": _format_timestamp(completed_at),
        }
        if message:
            entry["message"] = message
        if details is not None:
            entry["details"] = details

        with self._lock:
            history = self.read_history()
            history.append(entry)
            serialized = json.dumps(history, indent=2)
            self._log_path.write_text(f"{serialized}\n", encoding="utf-8")

    def read_history(self) -> List[Dict[str, object]]:
        if not self._log_path.exists():
            return []
        raw_content = self._log_path.read_text(encoding="utf-8").strip()
        if not raw_content:
            return []
        try:
            data = json.loads(raw_content)
        except json.JSONDecodeError as exc:
            raise ValueError(
                f"Task log is corrupted and cannot be parsed: {exc.msg}"
            ) from exc
        if not isinstance(data, list):
            raise ValueError("Task log must contain a JSON list of entries.")
        return data


@dataclass
class IntervalTask:
    """A task that runs every ``interval`` starting immediately."""

    name: str
    interval: timedelta
    action: Callable[[], Optional[Dict[str, object]]]
    next_run: datetime = field(default_factory=_utc_now)

    def mark_executed(self, now: Optional[datetime] = None) -> None:
        self.next_run = (now or _utc_now()) + self.interval


class IntervalTaskScheduler:
    """Lightweight scheduler that polls for due interval tasks."""

    def __init__(self, task_logger: TaskLogger, poll_interval_seconds: int = 30) -> None:
        self._task_logger = task_logger
        self._poll_interval_seconds = max(1, poll_interval_seconds)
        self._tasks: List[IntervalTask] = []
        self._stop_event = threading.Event()

    def add_interval_task(
        self, name: str, interval: timedelta, action: Callable[[], Optional[Dict[str, object]]]
    ) -> None:
        self._tasks.append(IntervalTask(name=name, interval=interval, action=action))

    def run_pending(self, now: Optional[datetime] = None) -> int:
        """Run every due task once; returns how many ran."""

        now = now or _utc_now()
        executed = 0
        for task in self._tasks:
            if now < task.next_run:
                continue
            try:
                execute_with_logging(task.name, task.action, self._task_logger)
            except Exception:  # noqa: BLE001 - failure is in the task log; keep the loop alive
                logger.exception("Scheduled task %s failed", task.name)
            finally:
                task.mark_executed(now)
                executed += 1
        return executed

    def start(self) -> None:
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_stop_signal)
            signal.signal(signal.SIGTERM, self._handle_stop_signal)

        try:
            while not self._stop_event.is_set():
                self.run_pending()
                self._stop_event.wait(self._poll_interval_seconds)
        finally:
            self._stop_event.set()

    def stop(self) -> None:
        self._stop_event.set()

    def _handle_stop_signal(self, signum: int, frame) -> None:  # type: ignore[override]
        self._stop_event.set()


def execute_with_logging(
    task_name: str, action: Callable[[], Optional[Dict[str, object]]], task_logger: TaskLogger
) -> Optional[Dict[str, object]]:
    """Run ``action`` while emitting structured log entries."""

    start_time = _utc_now()
    details: Optional[Dict[str, object]] = None
    status = "success"
    message: Optional[str] = None

    try:
        result = action()
        if isinstance(result, dict):
            details = result
        return result
    except Exception as exc:
        status = "failed"
        message = str(exc)
        raise
    finally:
        task_logger.log(
            task_name,
            status,
            start_time=start_time,
            message=message,
            details=details,
        )


def build_store():
    """SQLite store at ``BOOKING_DB_PATH``, or an in-memory store when unset."""

    db_path = os.getenv("BOOKING_DB_PATH")
    if db_path:
        return SQLiteAppointmentStore(db_path)
    logger.warning("BOOKING_DB_PATH is not set; bookings are kept in memory only")
    return InMemoryAppointmentStore()


def _patient_directory_from_env(timeout: float) -> Optional[FHIRPatientDirectory]:
    if not os.getenv("FHIR_BASE_URL") or not os.getenv("FHIR_CLIENT_ID"):
        return None
    client = FHIRClient(
        base_url=os.environ["FHIR_BASE_URL"],
        token_url=os.getenv("FHIR_TOKEN_URL"),
        client_id=os.getenv("FHIR_CLIENT_ID"),
        client_secret=os.getenv("FHIR_CLIENT_SECRET"),
        scope=os.getenv("FHIR_SCOPE"),
        timeout=timeout,
    )
    return FHIRPatientDirectory(client)


def build_booking_agent(store=None, config: Optional[SchedulingConfig] = None) -> BookingAgent:
    """Wire a booking agent from environment configuration."""

    config = config or SchedulingConfig.from_env()
    timeout = config.collaborator_timeout_seconds
    return BookingAgent(
        store if store is not None else build_store(),
        calendar=calendar_from_env(timeout),
        notifier=notifier_from_env(timeout),
        patient_directory=_patient_directory_from_env(timeout),
        config=config,
    )


def run_reminders(store=None) -> Dict[str, object]:
    """Send due reminders and return a structured summary."""

    report_path = os.getenv("BOOKING_REMINDER_REPORT")
    config = SchedulingConfig.from_env()
    agent = ReminderAgent(
        store if store is not None else build_store(),
        notifier_from_env(config.collaborator_timeout_seconds),
        config=config,
        report_path=report_path,
    )
    summary = agent.run()
    return {
        "processed": len(summary["reminders"]),
        "sent": summary["total_sent"],
        "failed": summary["total_failures"],
    }


def run_scheduler(task_logger: TaskLogger) -> None:
    store = build_store()
    scheduler = IntervalTaskScheduler(task_logger=task_logger)
    scheduler.add_interval_task(
        "appointment_reminders",
        timedelta(minutes=REMINDER_INTERVAL_MINUTES),
        lambda: run_reminders(store),
    )
    task_logger.log("scheduler", "started", message="Reminder scheduler started.")
    try:
        scheduler.start()
    finally:
        task_logger.log("scheduler", "stopped", message="Reminder scheduler stopped.")


def show_slots(target_date: str, appointment_type: Optional[str], timezone_name: Optional[str]) -> Dict[str, object]:
    agent = build_booking_agent()
    try:
        return agent.get_available_slots(target_date, appointment_type, timezone_name).to_dict()
    finally:
        agent.close()


def search_appointments(term: str) -> List[Dict[str, object]]:
    agent = build_booking_agent()
    try:
        return agent.search(term)
    finally:
        agent.close()


def _print_search(term: str) -> Dict[str, object]:
    matches = search_appointments(term)
    print(json.dumps(matches, indent=2))
    # Only the count goes to the task log; matches carry patient contact details.
    return {"count": len(matches)}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Telehealth booking orchestration controller")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run_scheduler", help="Send reminders every few minutes until stopped")
    subparsers.add_parser("run_reminders", help="Send due reminders once")

    slots_parser = subparsers.add_parser("slots", help="List available start times for a date")
    slots_parser.add_argument("date", help="Date as YYYY-MM-DD")
    slots_parser.add_argument("--type", dest="appointment_type", default=None, help="Appointment type name")
    slots_parser.add_argument("--timezone", default=None, help="IANA timezone name")

    search_parser = subparsers.add_parser("search", help="Find appointments by patient phone or email")
    search_parser.add_argument("term")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run_scheduler"
    return args


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=os.getenv("BOOKING_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = parse_args(argv)
    task_logger = TaskLogger(LOG_PATH)

    if args.command == "run_reminders":
        execute_with_logging("appointment_reminders", run_reminders, task_logger)
    elif args.command == "slots":
        result = execute_with_logging(
            "available_slots",
            lambda: show_slots(args.date, args.appointment_type, args.timezone),
            task_logger,
        )
        print(json.dumps(result, indent=2))
    elif args.command == "search":
        execute_with_logging("appointment_search", lambda: _print_search(args.term), task_logger)
    else:
        run_scheduler(task_logger)
    return 0


if __name__ == "__main__":
    sys.exit(main())
