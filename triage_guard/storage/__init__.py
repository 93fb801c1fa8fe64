"""Persistence: SQLite schema, ledger, run history and webhook markers."""
