"""
Unit tests for storage layer.

Tests schema creation, run history and webhook markers.
"""

import os
import shutil
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from triage_guard.storage.db import get_connection, initialize_schema, write_transaction
from triage_guard.storage.models import TriageRunRecord, WebhookEventRecord
from triage_guard.storage.repository import RunRepository, WebhookEventRepository


def make_run(run_id, caller_id="user-1", minutes=0, **overrides):
    values = dict(
        id=run_id,
        caller_id=caller_id,
        provider="openrouter",
        usage_mode="metered",
        decision={"key": run_id, "status": "Include", "source": "llm"},
        timestamp=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes),
        heuristics={"inclusion": [{"id": "inc", "terms": ["adult"]}], "exclusion": []},
        token_usage={"promptTokens": 10, "completionTokens": 5, "totalTokens": 15},
        cost={"currency": "usd", "estimatedCents": 35, "actualCents": 50},
        warning=None,
    )
    values.update(overrides)
    return TriageRunRecord(**values)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_schema_creation(self):
        """All tables are created and creation is idempotent."""
        initialize_schema(self.db_path)
        initialize_schema(self.db_path)

        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            tables = {row[0] for row in rows}
        finally:
            conn.close()

        assert {
            "billing_accounts",
            "billing_transactions",
            "billing_webhook_events",
            "triage_runs",
        } <= tables

    def test_negative_balance_rejected(self):
        """The schema itself refuses negative balances."""
        initialize_schema(self.db_path)
        conn = get_connection(self.db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("INSERT INTO billing_accounts (caller_id, balance_cents) VALUES ('u', -1)")
        finally:
            conn.close()

    def test_write_transaction_rolls_back(self):
        """An exception inside the transaction discards its writes."""
        initialize_schema(self.db_path)

        with pytest.raises(RuntimeError):
            with write_transaction(self.db_path) as conn:
                conn.execute("INSERT INTO billing_accounts (caller_id, balance_cents) VALUES ('u', 5)")
                raise RuntimeError("abort")

        conn = get_connection(self.db_path)
        try:
            assert conn.execute("SELECT COUNT(*) FROM billing_accounts").fetchone()[0] == 0
        finally:
            conn.close()


class TestRunRepository:
    """Test run history persistence."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = RunRepository(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_insert_and_read_back(self):
        """A run round-trips with its JSON columns."""
        run = make_run("run-1")
        self.repository.insert_run(run)

        [stored] = self.repository.recent_runs("user-1")

        assert stored == run
        assert stored.to_dict()["userId"] == "user-1"
        assert stored.to_dict()["usageMode"] == "metered"

    def test_newest_first_per_caller(self):
        """Runs are filtered by caller and ordered newest first."""
        self.repository.insert_run(make_run("old", minutes=0))
        self.repository.insert_run(make_run("new", minutes=5))
        self.repository.insert_run(make_run("other", caller_id="user-2", minutes=10))

        runs = self.repository.recent_runs("user-1")

        assert [run.id for run in runs] == ["new", "old"]
        assert len(self.repository.recent_runs(None)) == 3

    def test_limit(self):
        """Results are capped at the limit."""
        for index in range(30):
            self.repository.insert_run(make_run(f"run-{index}", minutes=index))

        runs = self.repository.recent_runs("user-1")

        assert len(runs) == 25
        assert runs[0].id == "run-29"
        assert len(self.repository.recent_runs("user-1", limit=3)) == 3

    def test_optional_columns(self):
        """Runs without usage or cost store nulls."""
        run = make_run("bare", caller_id=None, heuristics=None, token_usage=None, cost=None, warning="w")
        self.repository.insert_run(run)

        [stored] = self.repository.recent_runs(None)

        assert stored.cost is None
        assert stored.token_usage is None
        assert stored.warning == "w"


class TestWebhookEventRepository:
    """Test idempotency markers."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = WebhookEventRepository(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_marker_written_once(self):
        """The second insert for an event id is ignored."""
        event = WebhookEventRecord(
            event_id="evt_1",
            event_type="checkout.session.completed",
            processed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            session_id="cs_1",
            caller_id="user-1",
            amount_total=1800,
            currency="usd",
        )

        assert self.repository.is_processed("evt_1") is False
        assert self.repository.insert(event) is True
        assert self.repository.insert(event) is False
        assert self.repository.get("evt_1") == event
        assert self.repository.get("evt_missing") is None
