"""SQLite schema migrations."""

from authlife.core.migrations.runner import apply_migrations

__all__ = ["apply_migrations"]
