"""
Repository pattern for data access.

Run history and webhook idempotency markers. Ledger accounting lives in
``ledger.py`` because it needs write transactions across two tables.
"""

import json
from datetime import datetime
from typing import Any, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import TriageRunRecord, WebhookEventRecord


DEFAULT_RUN_HISTORY_LIMIT = 25


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def _load(value: Optional[str]) -> Any:
    if value is None:
        return None
    return json.loads(value)


class RunRepository:
    """Append-only store of triage runs."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def insert_run(self, run: TriageRunRecord) -> None:
        """Persist a single run entry.

        Args:
            run: The run to append
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO triage_runs (
                    id, caller_id, provider, usage_mode, decision,
                    heuristics, token_usage, cost, warning, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.caller_id,
                    run.provider,
                    run.usage_mode,
                    json.dumps(run.decision),
                    _dump(run.heuristics),
                    _dump(run.token_usage),
                    _dump(run.cost),
                    run.warning,
                    run.timestamp.isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def recent_runs(
        self,
        caller_id: Optional[str] = None,
        limit: int = DEFAULT_RUN_HISTORY_LIMIT,
    ) -> List[TriageRunRecord]:
        """Get recent runs, newest first.

        Args:
            caller_id: Restrict to one caller's runs; all callers when None
            limit: Maximum number of runs to return

        Returns:
            List of runs ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT id, caller_id, provider, usage_mode, decision,
                       heuristics, token_usage, cost, warning, timestamp
                FROM triage_runs
            """
            params: List[Any] = []
            if caller_id is not None:
                query += " WHERE caller_id = ?"
                params.append(caller_id)
            query += " ORDER BY timestamp DESC LIMIT ?"
            params.append(limit)

            runs = []
            for row in conn.execute(query, params).fetchall():
                runs.append(TriageRunRecord(
                    id=row["id"],
                    caller_id=row["caller_id"],
                    provider=row["provider"],
                    usage_mode=row["usage_mode"],
                    decision=json.loads(row["decision"]),
                    heuristics=_load(row["heuristics"]),
                    token_usage=_load(row["token_usage"]),
                    cost=_load(row["cost"]),
                    warning=row["warning"],
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                ))
            return runs
        finally:
            conn.close()


class WebhookEventRepository:
    """Processed-event markers keyed by payment event id."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT event_id, event_type, processed_at, session_id,
                       caller_id, amount_total, currency
                FROM billing_webhook_events WHERE event_id = ?
                """,
                (event_id,),
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return WebhookEventRecord(
            event_id=row["event_id"],
            event_type=row["event_type"],
            processed_at=datetime.fromisoformat(row["processed_at"]),
            session_id=row["session_id"],
            caller_id=row["caller_id"],
            amount_total=row["amount_total"],
            currency=row["currency"],
        )

    def is_processed(self, event_id: str) -> bool:
        return self.get(event_id) is not None

    def insert(self, event: WebhookEventRecord) -> bool:
        """Write the marker for an event.

        Returns:
            True if the marker was written, False if one already existed
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO billing_webhook_events (
                    event_id, event_type, processed_at, session_id,
                    caller_id, amount_total, currency
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event_id,
                    event.event_type,
                    event.processed_at.isoformat(),
                    event.session_id,
                    event.caller_id,
                    event.amount_total,
                    event.currency,
                ),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()
