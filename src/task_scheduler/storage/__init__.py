"""SQLite storage for task records and their audit events."""
