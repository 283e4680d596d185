"""Configuration parsing and normalization helpers for dnsoverlay.

Brief:
  This module contains the configuration utilities used by the CLI
  entrypoint. It centralizes:
    - reading and schema-validating YAML config files
    - parsing host:port strings
    - normalization helpers for listen/upstream/storage settings

Inputs:
  - YAML config dicts and paths

Outputs:
  - Normalized config values
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

import yaml

from .config_schema import validate_config

DEFAULT_LISTEN: Tuple[str, int] = ("127.0.0.1", 5353)
DEFAULT_TIMEOUT_MS = 2000
DEFAULT_DB_PATH = "./var/domains.db"


def parse_host_port(value: str, default_port: int = 53) -> Tuple[str, int]:
    """Brief: Split a 'host[:port]' string into a (host, port) tuple.

    Inputs:
      - value: 'host', 'host:port', '[v6]' or '[v6]:port'. A bare IPv6
        address without brackets is accepted as a host with the default port.
      - default_port: Port used when value carries none.

    Outputs:
      - (host, port)

    Raises:
      - ValueError: empty host or a port that is not an integer in 1..65535.

    Example:
      >>> parse_host_port("8.8.8.8:53")
      ('8.8.8.8', 53)
      >>> parse_host_port("[::1]:5353")
      ('::1', 5353)
      >>> parse_host_port("1.1.1.1")
      ('1.1.1.1', 53)
    """

    text = str(value).strip()
    port_text: Optional[str] = None
    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep:
            raise ValueError(f"Unterminated IPv6 literal in {value!r}")
        if rest:
            if not rest.startswith(":"):
                raise ValueError(f"Invalid address {value!r}")
            port_text = rest[1:]
    elif text.count(":") == 1:
        host, port_text = text.split(":", 1)
    else:
        host = text

    if not host:
        raise ValueError(f"Missing host in {value!r}")

    if port_text is None:
        return host, int(default_port)
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Invalid port in {value!r}") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"Port out of range in {value!r}")
    return host, port


def parse_config_file(config_path: str) -> Dict[str, Any]:
    """Brief: Read and schema-validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.

    Outputs:
      - dict: Parsed configuration mapping.

    Raises:
      - ValueError: When the root is not a mapping, schema validation fails or
        the upstream address cannot be parsed.
      - OSError: When the file cannot be read.
    """

    with open(config_path, "r") as f:
        cfg = yaml.safe_load(f) or {}

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    validate_config(cfg, config_path=config_path)
    try:
        normalize_upstream_config(cfg)
    except ValueError as exc:
        raise ValueError(
            f"Invalid configuration ({config_path}):\n  - config.upstream: {exc}"
        ) from None
    return cfg


def normalize_listen_config(cfg: Dict[str, Any]) -> Tuple[str, int]:
    listen_cfg = cfg.get("listen") or {}
    host = str(listen_cfg.get("host", DEFAULT_LISTEN[0]))
    port = int(listen_cfg.get("port", DEFAULT_LISTEN[1]))
    return host, port


def normalize_upstream_config(cfg: Dict[str, Any]) -> Tuple[Tuple[str, int], int]:
    """Brief: Normalize the upstream setting to an address plus a timeout.

    Inputs:
      - cfg: dict containing parsed YAML. cfg['upstream'] is either a
        'host:port' string or a mapping {'host': str, 'port': int}.
        cfg['timeout_ms'] is the forward timeout (default 2000).

    Outputs:
      - ((host, port), timeout_ms)

    Raises:
      - ValueError: For a missing or malformed upstream.
    """

    raw = cfg.get("upstream")
    if isinstance(raw, str):
        upstream = parse_host_port(raw)
    elif isinstance(raw, dict):
        if "host" not in raw:
            raise ValueError("config.upstream must include 'host'")
        upstream = (str(raw["host"]), int(raw.get("port", 53)))
    else:
        raise ValueError("config.upstream must be a 'host:port' string or a mapping")

    timeout_ms = int(cfg.get("timeout_ms", DEFAULT_TIMEOUT_MS))
    return upstream, timeout_ms


def normalize_storage_config(cfg: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    """Brief: Return (backend, db_path) from cfg['storage'].

    Outputs:
      - ('memory', None) or ('sqlite', path).
    """

    storage_cfg = cfg.get("storage") or {}
    backend = str(storage_cfg.get("backend", "memory")).lower()
    if backend == "sqlite":
        return backend, str(storage_cfg.get("db_path", DEFAULT_DB_PATH))
    return "memory", None
