from __future__ import annotations

import ipaddress
import logging
import threading
from dataclasses import dataclass
from typing import Generic, List, Optional, Tuple, TypeVar, Union, assert_never

from .config.config_parser import parse_host_port
from .storage import DomainTable, SQLiteDomainTable
from .storage.domain_table import IPv4Like

logger = logging.getLogger("dnsoverlay.state")

Address = Tuple[str, int]
DomainEntry = Tuple[str, ipaddress.IPv4Address]
T = TypeVar("T")


class BackendUsageError(Exception):
    """
    Brief: A synchronous state operation was used against a backend that
    cannot serve it without suspending.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


@dataclass(frozen=True)
class InMemoryBackend:
    table: DomainTable
    name = "memory"


@dataclass(frozen=True)
class PersistentBackend:
    table: SQLiteDomainTable
    name = "sqlite"


Backend = Union[InMemoryBackend, PersistentBackend]


class _Cell(Generic[T]):
    """Brief: Lock-guarded value with last-writer-wins semantics."""

    def __init__(self, value: T) -> None:
        self._lock = threading.Lock()
        self._value = value

    def get(self) -> T:
        with self._lock:
            return self._value

    def set(self, value: T) -> None:
        with self._lock:
            self._value = value


class ResolverState:
    """Shared resolver state: domain storage, enabled flag and upstream.

    Brief:
      Wraps exactly one storage backend for its whole lifetime and exposes a
      uniform async contract over it. The enabled flag and the upstream
      address are independent cells; reading one never synchronizes with the
      other or with the backend.

    Inputs (constructor):
      - upstream: (host, port) tuple or "host:port" string.
      - backend: Optional Backend; defaults to a fresh InMemoryBackend.
      - enabled: Initial value of the enabled flag (default True).

    Outputs:
      - ResolverState instance safe to share between asyncio tasks and
        threads.

    Example:
      >>> state = ResolverState("8.8.8.8:53")
      >>> state.add_domain_sync("local.dev", "127.0.0.1")
      >>> state.upstream
      ('8.8.8.8', 53)
    """

    def __init__(
        self,
        upstream: Union[Address, str],
        backend: Optional[Backend] = None,
        *,
        enabled: bool = True,
    ) -> None:
        self._backend: Backend = backend or InMemoryBackend(DomainTable())
        self._enabled: _Cell[bool] = _Cell(bool(enabled))
        self._upstream: _Cell[Address] = _Cell(_coerce_address(upstream))

    @classmethod
    def with_sqlite(
        cls, upstream: Union[Address, str], db_path: str, *, enabled: bool = True
    ) -> "ResolverState":
        """Brief: Build a state backed by a SQLiteDomainTable at db_path.

        Raises:
          - StorageError: the database could not be opened.
        """

        return cls(
            upstream, PersistentBackend(SQLiteDomainTable(db_path)), enabled=enabled
        )

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def enabled(self) -> bool:
        return self._enabled.get()

    def set_enabled(self, value: bool) -> None:
        self._enabled.set(bool(value))

    @property
    def upstream(self) -> Address:
        return self._upstream.get()

    def set_upstream(self, addr: Union[Address, str]) -> None:
        self._upstream.set(_coerce_address(addr))

    async def resolve(self, qname: str) -> Optional[ipaddress.IPv4Address]:
        backend = self._backend
        if isinstance(backend, InMemoryBackend):
            return backend.table.resolve(qname)
        elif isinstance(backend, PersistentBackend):
            return await backend.table.resolve(qname)
        else:
            assert_never(backend)

    async def add_domain(self, name: str, ip: IPv4Like) -> None:
        backend = self._backend
        if isinstance(backend, InMemoryBackend):
            backend.table.set(name, ip)
        elif isinstance(backend, PersistentBackend):
            await backend.table.set(name, ip)
        else:
            assert_never(backend)

    async def remove_domain(self, name: str) -> None:
        backend = self._backend
        if isinstance(backend, InMemoryBackend):
            backend.table.remove(name)
        elif isinstance(backend, PersistentBackend):
            await backend.table.remove(name)
        else:
            assert_never(backend)

    async def list_domains(self) -> List[DomainEntry]:
        backend = self._backend
        if isinstance(backend, InMemoryBackend):
            return backend.table.list()
        elif isinstance(backend, PersistentBackend):
            return await backend.table.list()
        else:
            assert_never(backend)

    def _memory_table(self, operation: str) -> DomainTable:
        backend = self._backend
        if isinstance(backend, InMemoryBackend):
            return backend.table
        elif isinstance(backend, PersistentBackend):
            logger.error(
                "%s called on the %s backend; use the async variant",
                operation,
                backend.name,
            )
            raise BackendUsageError(
                f"{operation} is only available for the in-memory backend"
            )
        else:
            assert_never(backend)

    def add_domain_sync(self, name: str, ip: IPv4Like) -> None:
        """Brief: Non-suspending add for callers outside the event loop.

        Raises:
          - BackendUsageError: the state is backed by persistent storage.
        """

        self._memory_table("add_domain_sync").set(name, ip)

    def remove_domain_sync(self, name: str) -> None:
        self._memory_table("remove_domain_sync").remove(name)

    def list_domains_sync(self) -> List[DomainEntry]:
        return self._memory_table("list_domains_sync").list()

    def close(self) -> None:
        backend = self._backend
        if isinstance(backend, InMemoryBackend):
            return
        elif isinstance(backend, PersistentBackend):
            backend.table.close()
        else:
            assert_never(backend)


def _coerce_address(addr: Union[Address, str]) -> Address:
    if isinstance(addr, str):
        return parse_host_port(addr)
    host, port = addr
    return str(host), int(port)
