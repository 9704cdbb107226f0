"""SQLite persistence helpers, table models and migrations."""
