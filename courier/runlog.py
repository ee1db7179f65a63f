import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from courier.timing import utc_now_iso

logger = logging.getLogger(__name__)

RUN_EVENT_COLUMNS = ("id", "timestamp", "run_id", "status", "step", "error_kind", "details")


def _ensure_table(session):
    session.execute(text(
        "CREATE TABLE IF NOT EXISTS run_event_log ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT,"
        "timestamp TEXT,"
        "run_id TEXT,"
        "status TEXT,"
        "step TEXT,"
        "error_kind TEXT,"
        "details TEXT"
        ")"
    ))
    session.execute(text(
        "CREATE INDEX IF NOT EXISTS idx_run_event_log_run_id ON run_event_log (run_id)"
    ))


def ensure_run_event_table(database):
    session = database.session()
    try:
        _ensure_table(session)
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def write_run_event(database, run_id: str, status: str, details: Optional[Dict[str, Any]] = None) -> int:
    """Append one run event; rows are never updated or deleted."""
    payload = dict(details or {})
    row = {
        "timestamp": utc_now_iso(),
        "run_id": str(run_id or ""),
        "status": str(status or ""),
        "step": str(payload.get("step", "") or ""),
        "error_kind": str(payload.get("error_kind", "") or ""),
        "details": json.dumps(payload, sort_keys=True, default=str),
    }
    with database.write_lock():
        session = database.session()
        try:
            _ensure_table(session)
            result = session.execute(text(
                "INSERT INTO run_event_log (timestamp, run_id, status, step, error_kind, details) "
                "VALUES (:timestamp, :run_id, :status, :step, :error_kind, :details)"
            ), row)
            session.commit()
            return int(result.lastrowid or 0)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def list_run_events(database, run_id: str = "", limit: int = 200) -> List[Dict[str, Any]]:
    session = database.session()
    try:
        _ensure_table(session)
        params: Dict[str, Any] = {"limit": max(1, int(limit))}
        query = (
            "SELECT id, timestamp, run_id, status, step, error_kind, details "
            "FROM run_event_log"
        )
        if run_id:
            query += " WHERE run_id = :run_id"
            params["run_id"] = str(run_id)
        query += " ORDER BY id ASC LIMIT :limit"
        rows = session.execute(text(query), params).fetchall()
    finally:
        session.close()

    events = []
    for row in rows:
        item = dict(zip(RUN_EVENT_COLUMNS, row))
        try:
            item["details"] = json.loads(item.get("details") or "{}")
        except ValueError:
            item["details"] = {"raw": item.get("details")}
        events.append(item)
    return events


class RunEventLog:
    """Binds a ``Database`` so callers only pass run id, status and details."""

    def __init__(self, database):
        self.database = database
        ensure_run_event_table(database)

    def write(self, run_id: str, status: str, details: Optional[Dict[str, Any]] = None) -> int:
        row_id = write_run_event(self.database, run_id, status, details)
        logger.debug("Run %s event %s recorded as row %s", run_id, status, row_id)
        return row_id

    def events(self, run_id: str = "", limit: int = 200) -> List[Dict[str, Any]]:
        return list_run_events(self.database, run_id, limit)

    def close(self):
        self.database.dispose()
