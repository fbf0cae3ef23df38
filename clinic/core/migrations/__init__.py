"""SQLite schema migrations for runtime state tables."""

from clinic.core.migrations.runner import apply_migrations

__all__ = ["apply_migrations"]
