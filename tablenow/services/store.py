"""Reservation store backed by SQLite."""

import asyncio
import json
import logging
import sqlite3
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar

from tablenow.errors import DuplicateConfirmationCode, StoreError
from tablenow.models import (
    CallLog,
    InboundEmailLog,
    Reservation,
    ReservationStatus,
    Tenant,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TenantLookupKey(str, Enum):
    """Tenant columns that identify a tenant for an inbound event."""

    PHONE_NUMBER_ID = "vapi_phone_id"
    PHONE_NUMBER = "vapi_phone_number"
    ASSISTANT_ID = "vapi_assistant_id"


# Columns a reservation update may touch. Identity, ownership and the
# confirmation code are never updatable.
UPDATABLE_RESERVATION_FIELDS = frozenset(
    {
        "guest_name",
        "guest_email",
        "guest_phone",
        "date",
        "time",
        "party_size",
        "special_requests",
        "status",
        "calendar_event_id",
        "crm_deal_id",
    }
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS tenants (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT,
    vapi_phone_id TEXT,
    vapi_phone_number TEXT,
    vapi_assistant_id TEXT,
    capacity INTEGER,
    max_party_size INTEGER,
    calendar_credentials TEXT,
    timezone TEXT,
    faq_text TEXT
);

CREATE TABLE IF NOT EXISTS reservations (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    confirmation_code TEXT NOT NULL UNIQUE,
    guest_name TEXT NOT NULL,
    guest_email TEXT,
    guest_phone TEXT,
    date TEXT NOT NULL,
    time TEXT NOT NULL,
    party_size INTEGER NOT NULL,
    special_requests TEXT,
    status TEXT NOT NULL DEFAULT 'confirmed',
    source TEXT NOT NULL DEFAULT 'manual',
    calendar_event_id TEXT,
    crm_deal_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS call_logs (
    call_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    caller_number TEXT,
    status TEXT NOT NULL,
    duration REAL,
    transcript TEXT,
    recording_url TEXT,
    started_at TEXT,
    ended_at TEXT
);

CREATE TABLE IF NOT EXISTS tool_results (
    call_id TEXT NOT NULL,
    tool_call_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    function_name TEXT NOT NULL,
    result TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (call_id, tool_call_id)
);

CREATE TABLE IF NOT EXISTS inbound_emails (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    from_email TEXT,
    subject TEXT,
    parsed_type TEXT,
    parsed_source TEXT,
    guest_email TEXT,
    guest_phone TEXT,
    booking_date TEXT,
    booking_time TEXT,
    party_size INTEGER,
    raw_content TEXT,
    received_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_reservations_tenant ON reservations(tenant_id);
CREATE INDEX IF NOT EXISTS idx_reservations_slot
    ON reservations(tenant_id, date, time, status);
CREATE INDEX IF NOT EXISTS idx_call_logs_tenant ON call_logs(tenant_id);
CREATE INDEX IF NOT EXISTS idx_inbound_emails_tenant ON inbound_emails(tenant_id);
"""


class ReservationStore(Protocol):
    """Storage operations the reservation engine depends on."""

    async def get_tenant(self, tenant_id: str) -> Tenant | None: ...

    async def find_tenant(self, key: TenantLookupKey, value: str) -> Tenant | None: ...

    async def find_reservation(
        self, confirmation_code: str, tenant_id: str | None = None
    ) -> Reservation | None: ...

    async def find_latest_reservation_by_email(
        self, tenant_id: str, guest_email: str
    ) -> Reservation | None: ...

    async def insert_reservation(self, reservation: Reservation) -> Reservation: ...

    async def update_reservation(
        self, reservation_id: str, fields: dict[str, Any]
    ) -> Reservation | None: ...

    async def get_call_log(self, call_id: str) -> CallLog | None: ...

    async def upsert_call_log(self, call_log: CallLog) -> CallLog: ...

    async def get_tool_result(
        self, call_id: str, tool_call_id: str
    ) -> dict[str, Any] | None: ...

    async def save_tool_result(
        self,
        call_id: str,
        tool_call_id: str,
        tenant_id: str,
        function_name: str,
        result: dict[str, Any],
    ) -> None: ...

    async def count_confirmed_party_size(
        self, tenant_id: str, date: str, time: str
    ) -> int: ...

    async def record_inbound_email(self, log: InboundEmailLog) -> None: ...


class SQLiteReservationStore:
    """SQLite implementation of ``ReservationStore``.

    A single connection is shared by the process. ``sqlite3`` blocks, so every
    operation runs in a worker thread and holds a lock for the duration of its
    statements. Each write runs in its own transaction; unique constraints on
    confirmation codes, call ids and tool call ids are the only concurrency
    guard.
    """

    def __init__(self, database_path: str | Path = ":memory:") -> None:
        """Open the database and create tables if needed.

        Args:
            database_path: File path, or ":memory:" for a throwaway database
        """
        self.database_path = str(database_path)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.database_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        logger.info(f"Reservation store initialized at {self.database_path}")

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    async def _run(self, operation: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._locked, operation, *args)

    def _locked(self, operation: Callable[..., T], *args: Any) -> T:
        with self._lock:
            return operation(*args)

    def _fetch_one(self, sql: str, params: Any = ()) -> sqlite3.Row | None:
        return self._conn.execute(sql, params).fetchone()

    def _fetch_all(self, sql: str, params: Any = ()) -> list[sqlite3.Row]:
        return self._conn.execute(sql, params).fetchall()

    def _write(self, sql: str, params: Any = ()) -> None:
        with self._conn:
            self._conn.execute(sql, params)

    # Tenants

    async def save_tenant(self, tenant: Tenant) -> Tenant:
        """Insert or replace a tenant record (onboarding and settings)."""
        row = tenant.model_dump()
        row["calendar_credentials"] = (
            json.dumps(tenant.calendar_credentials)
            if tenant.calendar_credentials
            else None
        )
        columns = ", ".join(row)
        placeholders = ", ".join(f":{name}" for name in row)
        await self._run(
            self._write,
            f"INSERT OR REPLACE INTO tenants ({columns}) VALUES ({placeholders})",
            row,
        )
        return tenant

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        row = await self._run(self._fetch_one, "SELECT * FROM tenants WHERE id = ?", (tenant_id,))
        return self._tenant_from_row(row) if row else None

    async def find_tenant(self, key: TenantLookupKey, value: str) -> Tenant | None:
        """Find the single tenant whose ``key`` column equals ``value``.

        Returns:
            The tenant, or None when nothing or more than one tenant matches
        """
        if not value:
            return None

        # key.value is one of the enum's column names, never caller input
        rows = await self._run(
            self._fetch_all, f"SELECT * FROM tenants WHERE {key.value} = ? LIMIT 2", (value,)
        )

        if len(rows) > 1:
            logger.warning(f"Ambiguous tenant lookup: {key.value}={value} matches several")
            return None

        return self._tenant_from_row(rows[0]) if rows else None

    @staticmethod
    def _tenant_from_row(row: sqlite3.Row) -> Tenant:
        data = dict(row)
        if data.get("calendar_credentials"):
            data["calendar_credentials"] = json.loads(data["calendar_credentials"])
        return Tenant(**data)

    # Reservations

    async def find_reservation(
        self, confirmation_code: str, tenant_id: str | None = None
    ) -> Reservation | None:
        """Find a reservation by code, optionally scoped to one tenant."""
        if tenant_id is None:
            row = await self._run(
                self._fetch_one,
                "SELECT * FROM reservations WHERE confirmation_code = ?",
                (confirmation_code,),
            )
        else:
            row = await self._run(
                self._fetch_one,
                "SELECT * FROM reservations WHERE confirmation_code = ? AND tenant_id = ?",
                (confirmation_code, tenant_id),
            )
        return Reservation(**dict(row)) if row else None

    async def find_latest_reservation_by_email(
        self, tenant_id: str, guest_email: str
    ) -> Reservation | None:
        row = await self._run(
            self._fetch_one,
            """
            SELECT * FROM reservations
            WHERE tenant_id = ? AND lower(guest_email) = lower(?)
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (tenant_id, guest_email),
        )
        return Reservation(**dict(row)) if row else None

    async def insert_reservation(self, reservation: Reservation) -> Reservation:
        """Insert a new reservation.

        Raises:
            DuplicateConfirmationCode: If the confirmation code is taken
            StoreError: If the row violates any other constraint
        """
        row = reservation.model_dump(mode="json")
        columns = ", ".join(row)
        placeholders = ", ".join(f":{name}" for name in row)
        try:
            await self._run(
                self._write,
                f"INSERT INTO reservations ({columns}) VALUES ({placeholders})",
                row,
            )
        except sqlite3.IntegrityError as e:
            if "confirmation_code" in str(e):
                raise DuplicateConfirmationCode(reservation.confirmation_code) from e
            raise StoreError(str(e)) from e

        logger.info(
            f"Stored reservation {reservation.confirmation_code} "
            f"for tenant {reservation.tenant_id}"
        )
        return reservation

    async def update_reservation(
        self, reservation_id: str, fields: dict[str, Any]
    ) -> Reservation | None:
        """Apply a partial update and return the stored row.

        Raises:
            StoreError: If a field is not updatable
        """
        unknown = set(fields) - UPDATABLE_RESERVATION_FIELDS
        if unknown:
            raise StoreError(f"Fields not updatable: {', '.join(sorted(unknown))}")

        values = {
            name: value.value if isinstance(value, ReservationStatus) else value
            for name, value in fields.items()
        }
        values["updated_at"] = datetime.now().isoformat()
        assignments = ", ".join(f"{name} = :{name}" for name in values)

        def update() -> sqlite3.Row | None:
            self._write(
                f"UPDATE reservations SET {assignments} WHERE id = :reservation_id",
                {**values, "reservation_id": reservation_id},
            )
            return self._fetch_one("SELECT * FROM reservations WHERE id = ?", (reservation_id,))

        row = await self._run(update)
        return Reservation(**dict(row)) if row else None

    async def count_confirmed_party_size(
        self, tenant_id: str, date: str, time: str
    ) -> int:
        """Sum the party sizes of confirmed reservations in one slot."""
        row = await self._run(
            self._fetch_one,
            """
            SELECT COALESCE(SUM(party_size), 0) FROM reservations
            WHERE tenant_id = ? AND date = ? AND time = ? AND status = ?
            """,
            (tenant_id, date, time, ReservationStatus.CONFIRMED.value),
        )
        return int(row[0])

    # Call logs

    async def get_call_log(self, call_id: str) -> CallLog | None:
        row = await self._run(
            self._fetch_one, "SELECT * FROM call_logs WHERE call_id = ?", (call_id,)
        )
        return CallLog(**dict(row)) if row else None

    async def list_call_logs(self, tenant_id: str) -> list[CallLog]:
        rows = await self._run(
            self._fetch_all,
            "SELECT * FROM call_logs WHERE tenant_id = ? ORDER BY started_at",
            (tenant_id,),
        )
        return [CallLog(**dict(row)) for row in rows]

    async def upsert_call_log(self, call_log: CallLog) -> CallLog:
        """Insert the call log, or overwrite the row with the same call id."""
        row = call_log.model_dump(mode="json")
        columns = ", ".join(row)
        placeholders = ", ".join(f":{name}" for name in row)
        updates = ", ".join(
            f"{name} = excluded.{name}" for name in row if name != "call_id"
        )
        await self._run(
            self._write,
            f"""
            INSERT INTO call_logs ({columns}) VALUES ({placeholders})
            ON CONFLICT(call_id) DO UPDATE SET {updates}
            """,
            row,
        )
        return call_log

    # Tool results

    async def get_tool_result(self, call_id: str, tool_call_id: str) -> dict[str, Any] | None:
        """Return the recorded result of a tool call, if any."""
        row = await self._run(
            self._fetch_one,
            "SELECT result FROM tool_results WHERE call_id = ? AND tool_call_id = ?",
            (call_id, tool_call_id),
        )
        return json.loads(row["result"]) if row else None

    async def save_tool_result(
        self,
        call_id: str,
        tool_call_id: str,
        tenant_id: str,
        function_name: str,
        result: dict[str, Any],
    ) -> None:
        """Record a tool call result. The first result for a key is kept."""
        await self._run(
            self._write,
            """
            INSERT OR IGNORE INTO tool_results (
                call_id, tool_call_id, tenant_id, function_name, result, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                call_id,
                tool_call_id,
                tenant_id,
                function_name,
                json.dumps(result),
                datetime.now().isoformat(),
            ),
        )

    # Inbound email

    async def record_inbound_email(self, log: InboundEmailLog) -> None:
        parsed = log.parsed
        await self._run(
            self._write,
            """
            INSERT INTO inbound_emails (
                tenant_id, from_email, subject, parsed_type, parsed_source,
                guest_email, guest_phone, booking_date, booking_time,
                party_size, raw_content, received_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                log.tenant_id,
                log.from_email,
                log.subject,
                parsed.type.value,
                parsed.source,
                parsed.email,
                parsed.phone,
                parsed.date,
                parsed.time,
                parsed.party_size,
                log.raw_content,
                log.received_at.isoformat(),
            ),
        )

    async def count_inbound_emails(self, tenant_id: str) -> int:
        row = await self._run(
            self._fetch_one,
            "SELECT COUNT(*) FROM inbound_emails WHERE tenant_id = ?",
            (tenant_id,),
        )
        return int(row[0])
