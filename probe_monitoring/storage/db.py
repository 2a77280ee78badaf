from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import structlog

from domain_probes.common_probe import CheckType, normalize_domain_name
from probe_monitoring.storage.models import (
    DEFAULT_INTERVAL_MINUTES,
    Check,
    Domain,
    DomainGroup,
    Incident,
    IncidentStatus,
    Notification,
    NotificationStatus,
    ProbeRun,
    Severity,
    new_id,
    validate_interval_minutes,
)


logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 3


class DuplicateDomainError(ValueError):
    pass


class IncidentAlreadyOpenError(ValueError):
    pass


def _utc_ts() -> float:
    return float(time.time())


def _ts(dt: datetime | None) -> float | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return float(dt.timestamp())


def _dt(ts: Any) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, default=str)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(str(s))
    except Exception:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL lets the API read while the worker writes.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except Exception:
        pass
    return conn


def _schema_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    return int(row["v"]) if row and row["v"] else 0


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    if _schema_version(conn) >= SCHEMA_VERSION:
        return

    # Re-read under the write lock: another connection may have migrated meanwhile.
    conn.execute("BEGIN IMMEDIATE;")
    try:
        cur = _schema_version(conn)
        if cur == 0:
            _apply_v1(conn)
            _apply_v2(conn)
            _apply_v3(conn)
        elif cur == 1:
            _apply_v2(conn)
            _apply_v3(conn)
        elif cur == 2:
            _apply_v3(conn)
        elif cur < SCHEMA_VERSION:
            raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")
        if cur < SCHEMA_VERSION:
            conn.execute(
                "INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),)
            )
        conn.execute("COMMIT;")
    except Exception:
        conn.execute("ROLLBACK;")
        raise


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS domains (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL UNIQUE,
          enabled INTEGER NOT NULL DEFAULT 1,
          interval_minutes INTEGER NOT NULL DEFAULT 5,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS checks (
          id TEXT PRIMARY KEY,
          domain_id TEXT NOT NULL REFERENCES domains(id) ON DELETE CASCADE,
          check_type TEXT NOT NULL,
          enabled INTEGER NOT NULL DEFAULT 1,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL,
          UNIQUE(domain_id, check_type)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS probe_runs (
          id TEXT PRIMARY KEY,
          domain_id TEXT NOT NULL REFERENCES domains(id) ON DELETE CASCADE,
          check_id TEXT NOT NULL REFERENCES checks(id) ON DELETE CASCADE,
          check_type TEXT NOT NULL,
          success INTEGER NOT NULL,
          error_code TEXT,
          error_message TEXT,
          dns_ms INTEGER,
          tls_ms INTEGER,
          ttfb_ms INTEGER,
          total_ms INTEGER NOT NULL,
          status_code INTEGER,
          snapshot_json TEXT,
          started_at_ts REAL NOT NULL,
          completed_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_probe_runs_domain_type ON probe_runs(domain_id, check_type, started_at_ts);"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS incidents (
          id TEXT PRIMARY KEY,
          domain_id TEXT NOT NULL REFERENCES domains(id) ON DELETE CASCADE,
          check_type TEXT NOT NULL,
          severity TEXT NOT NULL,
          status TEXT NOT NULL,
          reason TEXT,
          started_at_ts REAL NOT NULL,
          resolved_at_ts REAL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_incidents_open ON incidents(domain_id, check_type, status);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notifications (
          id TEXT PRIMARY KEY,
          domain_id TEXT NOT NULL REFERENCES domains(id) ON DELETE CASCADE,
          incident_id TEXT REFERENCES incidents(id) ON DELETE SET NULL,
          channel TEXT NOT NULL,
          destination TEXT NOT NULL,
          payload_json TEXT NOT NULL,
          status TEXT NOT NULL DEFAULT 'PENDING',
          retry_count INTEGER NOT NULL DEFAULT 0,
          created_at_ts REAL NOT NULL,
          processed_at_ts REAL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notification_attempts (
          id TEXT PRIMARY KEY,
          notification_id TEXT NOT NULL REFERENCES notifications(id) ON DELETE CASCADE,
          attempt_number INTEGER NOT NULL,
          error_message TEXT,
          attempted_at_ts REAL NOT NULL
        );
        """
    )


def _apply_v2(conn: sqlite3.Connection) -> None:
    # Domain groups came later; domains keep working without one.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS domain_groups (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL UNIQUE,
          created_at_ts REAL NOT NULL
        );
        """
    )
    cols = {str(r["name"]) for r in conn.execute("PRAGMA table_info(domains);").fetchall()}
    if "group_id" not in cols:
        conn.execute("ALTER TABLE domains ADD COLUMN group_id TEXT REFERENCES domain_groups(id) ON DELETE SET NULL;")


def _apply_v3(conn: sqlite3.Connection) -> None:
    # At most one OPEN incident per (domain, check type), across every process sharing the file.
    # Older files may hold duplicates: the earliest stays open, the rest are closed.
    now = _utc_ts()
    conn.execute(
        """
        UPDATE incidents
        SET status='RESOLVED', resolved_at_ts=?, updated_at_ts=?
        WHERE status='OPEN' AND EXISTS (
          SELECT 1 FROM incidents AS older
          WHERE older.domain_id = incidents.domain_id
            AND older.check_type = incidents.check_type
            AND older.status = 'OPEN'
            AND (older.started_at_ts < incidents.started_at_ts
                 OR (older.started_at_ts = incidents.started_at_ts AND older.rowid < incidents.rowid))
        );
        """,
        (now, now),
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_incidents_one_open
        ON incidents(domain_id, check_type) WHERE status='OPEN';
        """
    )


def _row_to_domain(row: sqlite3.Row) -> Domain:
    return Domain(
        id=str(row["id"]),
        name=str(row["name"]),
        enabled=bool(row["enabled"]),
        interval_minutes=int(row["interval_minutes"]),
        group_id=row["group_id"],
    )


def _row_to_check(row: sqlite3.Row) -> Check:
    return Check(
        id=str(row["id"]),
        domain_id=str(row["domain_id"]),
        check_type=str(row["check_type"]),
        enabled=bool(row["enabled"]),
    )


def _row_to_probe_run(row: sqlite3.Row) -> ProbeRun:
    return ProbeRun(
        id=str(row["id"]),
        domain_id=str(row["domain_id"]),
        check_id=str(row["check_id"]),
        check_type=str(row["check_type"]),
        success=bool(row["success"]),
        error_code=row["error_code"],
        error_message=row["error_message"],
        dns_ms=row["dns_ms"],
        tls_ms=row["tls_ms"],
        ttfb_ms=row["ttfb_ms"],
        total_ms=int(row["total_ms"]),
        status_code=row["status_code"],
        snapshot=_json_loads(row["snapshot_json"]),
        started_at=_dt(row["started_at_ts"]),
        completed_at=_dt(row["completed_at_ts"]),
    )


def _row_to_incident(row: sqlite3.Row) -> Incident:
    return Incident(
        id=str(row["id"]),
        domain_id=str(row["domain_id"]),
        check_type=str(row["check_type"]),
        severity=Severity(str(row["severity"])),
        status=IncidentStatus(str(row["status"])),
        reason=row["reason"],
        started_at=_dt(row["started_at_ts"]),
        resolved_at=_dt(row["resolved_at_ts"]),
    )


def _row_to_notification(row: sqlite3.Row) -> Notification:
    payload = _json_loads(row["payload_json"])
    return Notification(
        id=str(row["id"]),
        domain_id=str(row["domain_id"]),
        incident_id=row["incident_id"],
        channel=str(row["channel"]),
        destination=str(row["destination"]),
        payload=payload if isinstance(payload, dict) else {},
        status=NotificationStatus(str(row["status"])),
        retry_count=int(row["retry_count"]),
        created_at=_dt(row["created_at_ts"]),
        processed_at=_dt(row["processed_at_ts"]),
    )


class ProbeStore:
    """
    SQLite-backed configuration and result store.

    Every call opens its own connection, so the store can be used from worker
    threads (`asyncio.to_thread`) without sharing a connection.
    """

    def __init__(self, db_path: str):
        self.db_path = str(db_path)

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = _connect(self.db_path)
        try:
            _ensure_schema_conn(conn)
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
                conn.execute("COMMIT;")
            except Exception:
                conn.execute("ROLLBACK;")
                raise

    def ensure_schema(self) -> None:
        with self._conn():
            pass

    # Configuration store

    def ensure_group(self, name: str) -> DomainGroup:
        cleaned = str(name or "").strip()
        if not cleaned:
            raise ValueError("Group name is required")
        with self._transaction() as conn:
            row = conn.execute("SELECT id, name FROM domain_groups WHERE name=?", (cleaned,)).fetchone()
            if row:
                return DomainGroup(id=str(row["id"]), name=str(row["name"]))
            group = DomainGroup(id=new_id(), name=cleaned)
            conn.execute(
                "INSERT INTO domain_groups (id, name, created_at_ts) VALUES (?, ?, ?)",
                (group.id, group.name, _utc_ts()),
            )
            return group

    def create_domain(
        self,
        name: str,
        *,
        enabled: bool = True,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
        group_id: str | None = None,
    ) -> Domain:
        """Insert a domain plus one enabled check of every type."""
        normalized = normalize_domain_name(name)
        if not normalized:
            raise ValueError(f"Invalid domain name: {name!r}")
        minutes = validate_interval_minutes(interval_minutes)
        domain = Domain(
            id=new_id(),
            name=normalized,
            enabled=bool(enabled),
            interval_minutes=minutes,
            group_id=group_id,
        )
        now = _utc_ts()
        with self._transaction() as conn:
            existing = conn.execute("SELECT id FROM domains WHERE name=?", (normalized,)).fetchone()
            if existing:
                raise DuplicateDomainError(f"Domain already exists: {normalized}")
            conn.execute(
                """
                INSERT INTO domains (id, name, enabled, interval_minutes, group_id, created_at_ts, updated_at_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (domain.id, domain.name, 1 if domain.enabled else 0, domain.interval_minutes, group_id, now, now),
            )
            for check_type in CheckType:
                conn.execute(
                    """
                    INSERT INTO checks (id, domain_id, check_type, enabled, created_at_ts, updated_at_ts)
                    VALUES (?, ?, ?, 1, ?, ?)
                    """,
                    (new_id(), domain.id, check_type.value, now, now),
                )
        logger.info("Created domain", domain=domain.name, domain_id=domain.id)
        return domain

    def upsert_domain(
        self,
        name: str,
        *,
        enabled: bool = True,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
        group_id: str | None = None,
        checks: dict[CheckType, bool] | None = None,
    ) -> Domain:
        """Create or update a domain by normalized name, then apply per-type check toggles."""
        normalized = normalize_domain_name(name)
        existing = self.get_domain_by_name(normalized)
        if existing is None:
            domain = self.create_domain(normalized, enabled=enabled, interval_minutes=interval_minutes, group_id=group_id)
        else:
            minutes = validate_interval_minutes(interval_minutes)
            with self._transaction() as conn:
                conn.execute(
                    "UPDATE domains SET enabled=?, interval_minutes=?, group_id=?, updated_at_ts=? WHERE id=?",
                    (1 if enabled else 0, minutes, group_id, _utc_ts(), existing.id),
                )
                for check_type in CheckType:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO checks (id, domain_id, check_type, enabled, created_at_ts, updated_at_ts)
                        VALUES (?, ?, ?, 1, ?, ?)
                        """,
                        (new_id(), existing.id, check_type.value, _utc_ts(), _utc_ts()),
                    )
            domain = Domain(
                id=existing.id,
                name=existing.name,
                enabled=bool(enabled),
                interval_minutes=minutes,
                group_id=group_id,
            )
        for check_type, check_enabled in (checks or {}).items():
            self.set_check_enabled(domain.id, check_type, bool(check_enabled))
        return domain

    def get_domain(self, domain_id: str) -> Domain | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM domains WHERE id=?", (domain_id,)).fetchone()
            return _row_to_domain(row) if row else None

    def get_domain_by_name(self, name: str) -> Domain | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM domains WHERE name=?", (normalize_domain_name(name),)).fetchone()
            return _row_to_domain(row) if row else None

    def list_domains(self) -> list[Domain]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM domains ORDER BY name").fetchall()
            return [_row_to_domain(r) for r in rows]

    def list_checks(self, domain_id: str) -> list[Check]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM checks WHERE domain_id=? ORDER BY check_type", (domain_id,)
            ).fetchall()
            return [_row_to_check(r) for r in rows]

    def set_domain_enabled(self, domain_id: str, enabled: bool) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE domains SET enabled=?, updated_at_ts=? WHERE id=?",
                (1 if enabled else 0, _utc_ts(), domain_id),
            )

    def set_domain_interval(self, domain_id: str, interval_minutes: int) -> None:
        minutes = validate_interval_minutes(interval_minutes)
        with self._transaction() as conn:
            conn.execute(
                "UPDATE domains SET interval_minutes=?, updated_at_ts=? WHERE id=?",
                (minutes, _utc_ts(), domain_id),
            )

    def set_check_enabled(self, domain_id: str, check_type: CheckType | str, enabled: bool) -> None:
        value = getattr(check_type, "value", check_type)
        with self._transaction() as conn:
            conn.execute(
                "UPDATE checks SET enabled=?, updated_at_ts=? WHERE domain_id=? AND check_type=?",
                (1 if enabled else 0, _utc_ts(), domain_id, str(value)),
            )

    def delete_domain(self, domain_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM domains WHERE id=?", (domain_id,))
            deleted = cur.rowcount > 0
        if deleted:
            logger.info("Deleted domain", domain_id=domain_id)
        return deleted

    def list_enabled_domains_with_enabled_checks(self) -> list[tuple[Domain, list[Check]]]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT
                  d.id AS d_id, d.name AS d_name, d.enabled AS d_enabled,
                  d.interval_minutes AS d_interval_minutes, d.group_id AS d_group_id,
                  c.id AS c_id, c.check_type AS c_check_type, c.enabled AS c_enabled
                FROM domains d
                JOIN checks c ON c.domain_id=d.id
                WHERE d.enabled=1 AND c.enabled=1
                ORDER BY d.name, c.check_type
                """
            ).fetchall()

        out: list[tuple[Domain, list[Check]]] = []
        by_id: dict[str, list[Check]] = {}
        for r in rows:
            domain_id = str(r["d_id"])
            if domain_id not in by_id:
                domain = Domain(
                    id=domain_id,
                    name=str(r["d_name"]),
                    enabled=bool(r["d_enabled"]),
                    interval_minutes=int(r["d_interval_minutes"]),
                    group_id=r["d_group_id"],
                )
                by_id[domain_id] = []
                out.append((domain, by_id[domain_id]))
            by_id[domain_id].append(
                Check(
                    id=str(r["c_id"]),
                    domain_id=domain_id,
                    check_type=str(r["c_check_type"]),
                    enabled=bool(r["c_enabled"]),
                )
            )
        return out

    # Result store

    def save_probe_run(self, run: ProbeRun) -> ProbeRun:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO probe_runs (
                  id, domain_id, check_id, check_type, success, error_code, error_message,
                  dns_ms, tls_ms, ttfb_ms, total_ms, status_code, snapshot_json, started_at_ts, completed_at_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.domain_id,
                    run.check_id,
                    run.check_type,
                    1 if run.success else 0,
                    run.error_code,
                    run.error_message,
                    run.dns_ms,
                    run.tls_ms,
                    run.ttfb_ms,
                    int(run.total_ms),
                    run.status_code,
                    _json_dumps(run.snapshot) if run.snapshot is not None else None,
                    _ts(run.started_at),
                    _ts(run.completed_at),
                ),
            )
        return run

    def list_probe_runs(
        self,
        domain_id: str,
        *,
        check_type: CheckType | str | None = None,
        limit: int = 500,
    ) -> list[ProbeRun]:
        sql = "SELECT * FROM probe_runs WHERE domain_id=?"
        params: list[Any] = [domain_id]
        if check_type is not None:
            sql += " AND check_type=?"
            params.append(str(getattr(check_type, "value", check_type)))
        sql += " ORDER BY started_at_ts ASC, rowid ASC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [_row_to_probe_run(r) for r in rows]

    def find_open_incidents(self, domain_id: str, check_type: CheckType | str) -> list[Incident]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT * FROM incidents
                WHERE domain_id=? AND check_type=? AND status=?
                ORDER BY started_at_ts ASC
                """,
                (domain_id, str(getattr(check_type, "value", check_type)), IncidentStatus.OPEN.value),
            ).fetchall()
            return [_row_to_incident(r) for r in rows]

    def find_open_incident(self, domain_id: str, check_type: CheckType | str) -> Incident | None:
        found = self.find_open_incidents(domain_id, check_type)
        return found[0] if found else None

    def save_incident(self, incident: Incident) -> Incident:
        """
        Insert or update an incident by id.

        Raises IncidentAlreadyOpenError when the write would leave two OPEN
        incidents for the same domain and check type.
        """
        now = _utc_ts()
        try:
            with self._transaction() as conn:
                self._upsert_incident(conn, incident, now)
        except sqlite3.IntegrityError as e:
            if incident.status != IncidentStatus.OPEN:
                raise
            raise IncidentAlreadyOpenError(
                f"Incident already open: domain_id={incident.domain_id} check_type={incident.check_type}"
            ) from e
        return incident

    @staticmethod
    def _upsert_incident(conn: sqlite3.Connection, incident: Incident, now: float) -> None:
        conn.execute(
            """
            INSERT INTO incidents (
              id, domain_id, check_type, severity, status, reason,
              started_at_ts, resolved_at_ts, created_at_ts, updated_at_ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              severity=excluded.severity,
              status=excluded.status,
              reason=excluded.reason,
              resolved_at_ts=excluded.resolved_at_ts,
              updated_at_ts=excluded.updated_at_ts
            """,
            (
                incident.id,
                incident.domain_id,
                incident.check_type,
                incident.severity.value,
                incident.status.value,
                incident.reason,
                _ts(incident.started_at),
                _ts(incident.resolved_at),
                now,
                now,
            ),
        )

    def list_incidents(
        self,
        domain_id: str,
        *,
        check_type: CheckType | str | None = None,
        status: IncidentStatus | None = None,
    ) -> list[Incident]:
        sql = "SELECT * FROM incidents WHERE domain_id=?"
        params: list[Any] = [domain_id]
        if check_type is not None:
            sql += " AND check_type=?"
            params.append(str(getattr(check_type, "value", check_type)))
        if status is not None:
            sql += " AND status=?"
            params.append(status.value)
        sql += " ORDER BY started_at_ts ASC, rowid ASC"
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [_row_to_incident(r) for r in rows]

    # Notification outbox

    def enqueue_notification(
        self,
        domain_id: str,
        incident_id: str | None,
        channel: str,
        destination: str,
        payload: dict[str, Any],
    ) -> Notification:
        notification = Notification(
            domain_id=domain_id,
            incident_id=incident_id,
            channel=str(channel),
            destination=str(destination),
            payload=dict(payload or {}),
        )
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO notifications (
                  id, domain_id, incident_id, channel, destination, payload_json, status, retry_count, created_at_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    notification.id,
                    notification.domain_id,
                    notification.incident_id,
                    notification.channel,
                    notification.destination,
                    _json_dumps(notification.payload),
                    NotificationStatus.PENDING.value,
                    _ts(notification.created_at),
                ),
            )
        return notification

    def list_pending_notifications(self, *, limit: int = 10, max_retries: int = 3) -> list[Notification]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT * FROM notifications
                WHERE status=? AND retry_count < ?
                ORDER BY created_at_ts ASC, rowid ASC
                LIMIT ?
                """,
                (NotificationStatus.PENDING.value, max(1, int(max_retries)), max(1, int(limit))),
            ).fetchall()
            return [_row_to_notification(r) for r in rows]

    def list_notifications(self, domain_id: str) -> list[Notification]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE domain_id=? ORDER BY created_at_ts ASC, rowid ASC",
                (domain_id,),
            ).fetchall()
            return [_row_to_notification(r) for r in rows]

    def mark_notification_sent(self, notification_id: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE notifications SET status=?, processed_at_ts=? WHERE id=?",
                (NotificationStatus.SENT.value, _utc_ts(), notification_id),
            )

    def record_notification_failure(
        self,
        notification_id: str,
        *,
        error_message: str,
        max_retries: int = 3,
    ) -> NotificationStatus:
        with self._transaction() as conn:
            row = conn.execute("SELECT retry_count FROM notifications WHERE id=?", (notification_id,)).fetchone()
            if row is None:
                raise KeyError(f"Unknown notification: {notification_id}")
            attempt = int(row["retry_count"]) + 1
            status = NotificationStatus.FAILED if attempt >= int(max_retries) else NotificationStatus.PENDING
            conn.execute(
                "UPDATE notifications SET retry_count=?, status=? WHERE id=?",
                (attempt, status.value, notification_id),
            )
            conn.execute(
                """
                INSERT INTO notification_attempts (id, notification_id, attempt_number, error_message, attempted_at_ts)
                VALUES (?, ?, ?, ?, ?)
                """,
                (new_id(), notification_id, attempt, str(error_message or "")[:1000], _utc_ts()),
            )
        return status

    def count_notification_attempts(self, notification_id: str) -> int:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM notification_attempts WHERE notification_id=?", (notification_id,)
            ).fetchone()
            return int(row["n"]) if row else 0
