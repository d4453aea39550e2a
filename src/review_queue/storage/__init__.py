"""SQLite persistence: engine policy, ORM tables, schema versioning."""
