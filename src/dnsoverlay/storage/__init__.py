"""Domain mapping storage backends.

Brief:
  Two interchangeable tables that map normalized domain names to IPv4
  addresses: an in-memory table for quick local overrides and a sqlite3-backed
  table that survives restarts.
"""

from .domain_table import DomainTable, normalize_name, wildcard_candidates
from .sqlite_table import SQLiteDomainTable, StorageError

__all__ = [
    "DomainTable",
    "SQLiteDomainTable",
    "StorageError",
    "normalize_name",
    "wildcard_candidates",
]
