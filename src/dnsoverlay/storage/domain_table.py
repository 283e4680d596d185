from __future__ import annotations

import ipaddress
import threading
from typing import Dict, Iterator, List, Optional, Tuple, Union

IPv4Like = Union[str, int, ipaddress.IPv4Address]


def normalize_name(name: str) -> str:
    """Brief: Canonical lookup/storage key for a domain name.

    Inputs:
      - name: Domain name in any case, with or without a trailing dot.

    Outputs:
      - str: Lowercased name with one trailing dot stripped.

    Example:
      >>> normalize_name("Local.Dev.")
      'local.dev'
    """

    key = str(name).lower()
    if key.endswith("."):
        key = key[:-1]
    return key


def wildcard_candidates(normalized: str) -> Iterator[str]:
    """Brief: Yield wildcard keys covering a name, most specific first.

    Inputs:
      - normalized: Name already passed through normalize_name().

    Outputs:
      - Iterator[str]: '*.<suffix>' keys, one per label after the first.

    Example:
      >>> list(wildcard_candidates("a.b.example.com"))
      ['*.b.example.com', '*.example.com', '*.com']
      >>> list(wildcard_candidates("localhost"))
      []
    """

    labels = normalized.split(".")
    for i in range(len(labels) - 1):
        yield "*." + ".".join(labels[i + 1 :])


def to_ipv4(ip: IPv4Like) -> ipaddress.IPv4Address:
    """Brief: Coerce str/int/IPv4Address into an IPv4Address.

    Raises:
      - ValueError: When the value is not an IPv4 address.
    """

    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    try:
        return ipaddress.IPv4Address(ip)
    except ipaddress.AddressValueError as exc:
        raise ValueError(f"not an IPv4 address: {ip!r}") from exc


class DomainTable:
    """In-memory domain -> IPv4 table with wildcard-suffix lookup.

    Brief:
      Keys are stored normalized (see normalize_name). A key whose first label
      is '*' matches any name that ends with the rest of the key and has at
      least one more label in front of it.

    Inputs:
      - None.

    Outputs:
      - DomainTable instance. All methods are thread-safe.

    Example:
      >>> table = DomainTable()
      >>> table.set("*.example.com", "10.0.0.42")
      >>> str(table.resolve("API.example.com."))
      '10.0.0.42'
      >>> table.resolve("example.com") is None
      True
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._map: Dict[str, ipaddress.IPv4Address] = {}

    def set(self, name: str, ip: IPv4Like) -> None:
        addr = to_ipv4(ip)
        key = normalize_name(name)
        with self._lock:
            self._map[key] = addr

    def remove(self, name: str) -> None:
        key = normalize_name(name)
        with self._lock:
            self._map.pop(key, None)

    def resolve(self, qname: str) -> Optional[ipaddress.IPv4Address]:
        """Brief: Exact match first, then wildcard suffixes.

        Inputs:
          - qname: Query name (any case, trailing dot optional).

        Outputs:
          - IPv4Address when a mapping covers the name, else None.
        """

        key = normalize_name(qname)
        with self._lock:
            hit = self._map.get(key)
            if hit is not None:
                return hit
            for candidate in wildcard_candidates(key):
                hit = self._map.get(candidate)
                if hit is not None:
                    return hit
        return None

    def list(self) -> List[Tuple[str, ipaddress.IPv4Address]]:
        with self._lock:
            return list(self._map.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._map)
