"""SQLite persistence: engine policy, ORM tables, and migrations."""
