"""Route modules for the API."""

from . import sql_backup

__all__ = [
    "sql_backup",
]
