"""SQLite-backed appointment store.

Check-then-write sequences run inside ``BEGIN IMMEDIATE`` so the write lock
is taken before the conflict read, which serializes concurrent bookings
across processes sharing the database file. A process-local re-entrant lock
serializes threads sharing the connection.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from scheduling.models import UPDATABLE_FIELDS, Appointment

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS appointments (
    id TEXT PRIMARY KEY,
    confirmation_number TEXT NOT NULL,
    patient_name TEXT NOT NULL,
    patient_phone TEXT,
    patient_email TEXT,
    patient_id TEXT,
    appointment_type TEXT NOT NULL,
    provider TEXT,
    date TEXT NOT NULL,
    time TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    timezone TEXT NOT NULL,
    duration_minutes INTEGER NOT NULL,
    buffer_before_minutes INTEGER NOT NULL DEFAULT 0,
    buffer_after_minutes INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'scheduled',
    notes TEXT NOT NULL DEFAULT '',
    cancellation_reason TEXT,
    reminder_sent INTEGER NOT NULL DEFAULT 0,
    calendar_event_id TEXT,
    calendar_link TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_appointments_date ON appointments(date);
CREATE INDEX IF NOT EXISTS idx_appointments_phone ON appointments(patient_phone);
CREATE INDEX IF NOT EXISTS idx_appointments_email ON appointments(patient_email);
CREATE INDEX IF NOT EXISTS idx_appointments_status ON appointments(status);
CREATE INDEX IF NOT EXISTS idx_appointments_confirmation ON appointments(confirmation_number);
"""

_COLUMNS = (
    "id",
    "confirmation_number",
    "patient_name",
    "patient_phone",
    "patient_email",
    "patient_id",
    "appointment_type",
    "provider",
    "date",
    "time",
    "start_time",
    "end_time",
    "timezone",
    "duration_minutes",
    "buffer_before_minutes",
    "buffer_after_minutes",
    "status",
    "notes",
    "cancellation_reason",
    "reminder_sent",
    "calendar_event_id",
    "calendar_link",
    "created_at",
    "updated_at",
)


def _to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


class SQLiteAppointmentStore:
    """Appointment store persisted in a SQLite database file."""

    def __init__(self, path: Union[str, Path] = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        with self._lock:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._depth = 0

    def _fetch(self, sql: str, params: tuple = ()) -> List[Appointment]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_appointment(row) for row in rows]

    @staticmethod
    def _row_to_appointment(row: sqlite3.Row) -> Appointment:
        record: Dict[str, Any] = {key: row[key] for key in row.keys() if key != "confirmation_number"}
        record["reminder_sent"] = bool(record["reminder_sent"])
        return Appointment.from_record(record)

    def get_bookings_for_date(self, date: str) -> List[Appointment]:
        return self._fetch("SELECT * FROM appointments WHERE date = ? ORDER BY time ASC, start_time ASC", (date,))

    def get_booking(self, appointment_id: str) -> Optional[Appointment]:
        rows = self._fetch("SELECT * FROM appointments WHERE id = ?", (appointment_id,))
        return rows[0] if rows else None

    def get_booking_by_confirmation(self, code: str) -> Optional[Appointment]:
        rows = self._fetch(
            "SELECT * FROM appointments WHERE confirmation_number = ?",
            (code.strip().upper(),),
        )
        return rows[0] if rows else None

    def create_booking(self, appointment: Appointment) -> Appointment:
        record = appointment.to_record()
        record["confirmation_number"] = appointment.confirmation_number
        values = tuple(_to_column(record[column]) for column in _COLUMNS)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._lock:
            try:
                self._conn.execute(
                    f"INSERT INTO appointments ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                    values,
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Appointment '{appointment.id}' already exists") from exc
        logger.debug("Stored appointment %s", appointment.id)
        return appointment

    def update_booking(self, appointment_id: str, fields: Mapping[str, Any]) -> Appointment:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown or immutable appointment fields: {sorted(unknown)}")
        changes = dict(fields)
        changes["updated_at"] = datetime.now(timezone.utc)

        with self.transaction():
            current = self.get_booking(appointment_id)
            if current is None:
                raise KeyError(appointment_id)
            # Validates the merged record (duration invariant, status) before writing.
            merged = Appointment.from_record({**current.to_record(), **{k: _to_column(v) for k, v in changes.items()}})
            assignments = ", ".join(f"{column} = ?" for column in changes)
            values = tuple(_to_column(value) for value in changes.values())
            self._conn.execute(f"UPDATE appointments SET {assignments} WHERE id = ?", values + (appointment_id,))
        return merged

    def find_bookings(self, term: str) -> List[Appointment]:
        needle = term.strip()
        if not needle:
            return []
        escaped = needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        return self._fetch(
            "SELECT * FROM appointments "
            "WHERE patient_phone LIKE ? ESCAPE '\\' OR patient_email LIKE ? ESCAPE '\\' "
            "ORDER BY date DESC, time DESC",
            (pattern, pattern),
        )

    def list_bookings(self, status: Optional[str] = None) -> List[Appointment]:
        if status is None:
            return self._fetch("SELECT * FROM appointments ORDER BY date DESC, time DESC")
        return self._fetch(
            "SELECT * FROM appointments WHERE status = ? ORDER BY date DESC, time DESC",
            (status,),
        )

    def mark_reminder_sent(self, appointment_id: str) -> None:
        self.update_booking(appointment_id, {"reminder_sent": True})
