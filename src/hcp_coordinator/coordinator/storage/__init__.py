"""SQLite-backed request rows and audit trail."""
