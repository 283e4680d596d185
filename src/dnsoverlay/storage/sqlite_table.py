from __future__ import annotations

import asyncio
import functools
import ipaddress
import logging
import os
import sqlite3
import threading
from typing import Any, Callable, List, Optional, Tuple

from .domain_table import IPv4Like, normalize_name, to_ipv4, wildcard_candidates

logger = logging.getLogger("dnsoverlay.storage")


class StorageError(Exception):
    """
    Brief: Persistent domain table I/O failure.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS domain_mappings ("
    "domain TEXT PRIMARY KEY, "
    "ip_a INTEGER NOT NULL, "
    "ip_b INTEGER NOT NULL, "
    "ip_c INTEGER NOT NULL, "
    "ip_d INTEGER NOT NULL, "
    "created_at INTEGER DEFAULT (strftime('%s', 'now')), "
    "updated_at INTEGER DEFAULT (strftime('%s', 'now'))"
    ")"
)

_UPDATE_TRIGGER = (
    "CREATE TRIGGER IF NOT EXISTS update_domain_mappings_timestamp "
    "AFTER UPDATE ON domain_mappings "
    "BEGIN "
    "UPDATE domain_mappings SET updated_at = strftime('%s', 'now') "
    "WHERE domain = NEW.domain; "
    "END"
)


def _row_to_ip(row: Tuple[int, int, int, int]) -> ipaddress.IPv4Address:
    return ipaddress.IPv4Address(bytes(int(octet) & 0xFF for octet in row))


class SQLiteDomainTable:
    """SQLite-backed domain -> IPv4 table.

    Brief:
      Same lookup semantics as DomainTable, persisted in a single
      ``domain_mappings`` table keyed by the normalized domain name. Each
      address is stored as four octet columns. Public methods are coroutines;
      the blocking sqlite3 work runs in the running loop's default executor so
      DNS handling never stalls on disk I/O.

    Inputs (constructor):
      - db_path: Path to the sqlite3 database file, or ':memory:'.
      - journal_mode: SQLite journal mode (default 'WAL'). Best-effort.
      - create_dir: Create the parent directory of db_path when missing.

    Outputs:
      - SQLiteDomainTable instance.

    Notes:
      - Every failure from sqlite3 surfaces as StorageError, as does a
        database directory that cannot be created.
      - All connection access is serialized with an RLock; each write commits
        in its own transaction so readers never observe a partial row.

    Example:
      >>> table = SQLiteDomainTable(":memory:")
      >>> asyncio.run(table.set("sqlite.dev", "10.0.0.1"))
      >>> str(asyncio.run(table.resolve("SQLITE.dev.")))
      '10.0.0.1'
    """

    def __init__(
        self,
        db_path: str,
        *,
        journal_mode: str = "WAL",
        create_dir: bool = True,
    ) -> None:
        self.db_path = str(db_path)
        self.journal_mode = str(journal_mode or "WAL")
        self.create_dir = bool(create_dir)

        self._lock = threading.RLock()
        try:
            self._conn = self._init_connection()
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"cannot open {self.db_path}: {exc}") from exc

    def _init_connection(self) -> sqlite3.Connection:
        """Brief: Open the sqlite connection and ensure the schema exists.

        Inputs:
          - None.

        Outputs:
          - sqlite3.Connection: Open connection with schema and trigger ready.
        """

        db_path = self.db_path
        if db_path != ":memory:":
            db_path = os.path.abspath(os.path.expanduser(db_path))
            self.db_path = db_path

            if self.create_dir:
                dir_path = os.path.dirname(db_path)
                if dir_path:
                    os.makedirs(dir_path, exist_ok=True)

        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        try:
            conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        except sqlite3.Error:
            # Some environments restrict PRAGMAs.
            logger.debug("journal_mode=%s not applied", self.journal_mode)

        with conn:
            conn.execute(_SCHEMA)
            conn.execute(_UPDATE_TRIGGER)
        logger.debug("Opened domain table at %s", self.db_path)
        return conn

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    def _execute(
        self, sql: str, params: Tuple[Any, ...] = (), write: bool = False
    ) -> List[Any]:
        """Brief: Run one statement under the lock, mapping errors to StorageError.

        Inputs:
          - sql: SQL statement.
          - params: Bound parameters.
          - write: Commit (or roll back) the statement as its own transaction.

        Outputs:
          - list of fetched rows (empty for writes).
        """

        with self._lock:
            try:
                if write:
                    with self._conn:
                        self._conn.execute(sql, params)
                    return []
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"{self.db_path}: {exc}") from exc

    def _get_exact(self, key: str) -> Optional[ipaddress.IPv4Address]:
        rows = self._execute(
            "SELECT ip_a, ip_b, ip_c, ip_d FROM domain_mappings WHERE domain = ?",
            (key,),
        )
        if not rows:
            return None
        return _row_to_ip(rows[0])

    def _resolve_sync(self, qname: str) -> Optional[ipaddress.IPv4Address]:
        key = normalize_name(qname)
        hit = self._get_exact(key)
        if hit is not None:
            return hit
        for candidate in wildcard_candidates(key):
            hit = self._get_exact(candidate)
            if hit is not None:
                return hit
        return None

    def _set_sync(self, name: str, addr: ipaddress.IPv4Address) -> None:
        a, b, c, d = addr.packed
        self._execute(
            "INSERT INTO domain_mappings (domain, ip_a, ip_b, ip_c, ip_d) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(domain) DO UPDATE SET "
            "ip_a = excluded.ip_a, ip_b = excluded.ip_b, "
            "ip_c = excluded.ip_c, ip_d = excluded.ip_d",
            (normalize_name(name), a, b, c, d),
            write=True,
        )

    def _list_sync(self) -> List[Tuple[str, ipaddress.IPv4Address]]:
        rows = self._execute(
            "SELECT domain, ip_a, ip_b, ip_c, ip_d FROM domain_mappings ORDER BY domain"
        )
        return [(str(row[0]), _row_to_ip(row[1:])) for row in rows]

    async def set(self, name: str, ip: IPv4Like) -> None:
        """Brief: Insert or overwrite the mapping for name.

        Raises:
          - ValueError: ip is not an IPv4 address.
          - StorageError: the write failed; nothing was stored.
        """

        addr = to_ipv4(ip)
        await self._run(self._set_sync, name, addr)

    async def remove(self, name: str) -> None:
        await self._run(
            self._execute,
            "DELETE FROM domain_mappings WHERE domain = ?",
            (normalize_name(name),),
            True,
        )

    async def resolve(self, qname: str) -> Optional[ipaddress.IPv4Address]:
        """Brief: Exact match first, then wildcard suffixes, one query per key.

        Inputs:
          - qname: Query name (any case, trailing dot optional).

        Outputs:
          - IPv4Address or None.

        Raises:
          - StorageError on any sqlite failure.
        """

        return await self._run(self._resolve_sync, qname)

    async def list(self) -> List[Tuple[str, ipaddress.IPv4Address]]:
        return await self._run(self._list_sync)

    async def count(self) -> int:
        rows = await self._run(self._execute, "SELECT COUNT(*) FROM domain_mappings")
        return int(rows[0][0])

    async def clear(self) -> None:
        await self._run(self._execute, "DELETE FROM domain_mappings", (), True)

    def close(self) -> None:
        """Brief: Close the underlying sqlite connection."""

        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error:
                logger.debug("Error closing %s", self.db_path, exc_info=True)

    def __enter__(self) -> "SQLiteDomainTable":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.close()
