"""SQLite persistence for the model registry, usage ledger and metrics."""
