"""SQLite persistence for the job queue."""
