from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Any, Dict, List, Optional, assert_never

from .config.config_parser import (
    normalize_listen_config,
    normalize_storage_config,
    normalize_upstream_config,
    parse_config_file,
)
from .config.logging_config import init_logging
from .resolver_state import InMemoryBackend, PersistentBackend, ResolverState
from .servers.udp_server import run_udp_server
from .servers.webserver import WebServerHandle, start_webserver
from .storage import StorageError


def build_state(cfg: Dict[str, Any]) -> ResolverState:
    """
    Build the ResolverState described by the config (storage + upstream + enabled).

    Inputs:
      - cfg: Validated configuration mapping.
    Outputs:
      - ResolverState with the configured backend. Domains are not seeded here.

    Raises:
      - StorageError: the sqlite database could not be opened.
    """
    upstream, _ = normalize_upstream_config(cfg)
    backend, db_path = normalize_storage_config(cfg)
    enabled = bool(cfg.get("enabled", True))
    if backend == "sqlite":
        return ResolverState.with_sqlite(upstream, db_path, enabled=enabled)
    return ResolverState(upstream, enabled=enabled)


async def seed_domains(state: ResolverState, domains: Optional[Dict[str, str]]) -> int:
    """
    Load the ``domains`` mapping from the config into the state's backend.

    The in-memory backend is seeded through the non-suspending variant; the
    persistent backend is written through the async path so the sqlite work
    stays off the event loop.

    Inputs:
      - state: ResolverState to populate.
      - domains: Mapping of domain name -> IPv4 string, or None.
    Outputs:
      - int: number of mappings written.
    """
    count = 0
    for name, ip in (domains or {}).items():
        if isinstance(state.backend, InMemoryBackend):
            state.add_domain_sync(name, ip)
        elif isinstance(state.backend, PersistentBackend):
            await state.add_domain(name, ip)
        else:
            assert_never(state.backend)
        count += 1
    return count


async def serve(cfg: Dict[str, Any], state: ResolverState) -> int:
    """
    Run the UDP listener until SIGINT/SIGTERM, then shut down gracefully.

    Inputs:
      - cfg: Validated configuration mapping.
      - state: ResolverState shared with the admin API.
    Outputs:
      - int exit code (0 clean, 1 on bind or storage errors).
    """
    logger = logging.getLogger("dnsoverlay.main")
    listen = normalize_listen_config(cfg)
    _, timeout_ms = normalize_upstream_config(cfg)

    try:
        seeded = await seed_domains(state, cfg.get("domains"))
    except StorageError as e:
        logger.error("Failed to seed domains: %s", e)
        return 1
    logger.info(
        "Loaded %d domain mappings into the %s backend", seeded, state.backend_name
    )

    try:
        handle = await run_udp_server(listen, state, timeout_ms=timeout_ms)
    except OSError as e:
        logger.error("Failed to bind UDP listener on %s:%d: %s", listen[0], listen[1], e)
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            logger.debug("Signal handler for %s not installed", sig)

    host, port = state.upstream
    logger.info("Forwarding unresolved queries to %s:%d", host, port)
    await stop.wait()
    logger.info("Shutdown requested")
    await handle.shutdown()
    return 0


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the DNS override server.
    Parses arguments, loads configuration, builds the resolver state and runs
    the UDP listener (plus the admin API when enabled).

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code.

    Example use:
        CLI:
            dnsoverlay --config config.yaml
            PYTHONPATH=src python -m dnsoverlay.main --config config.yaml
    """
    parser = argparse.ArgumentParser(
        description="Local DNS override server: answer configured domains, forward the rest"
    )
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    args = parser.parse_args(argv)

    try:
        cfg = parse_config_file(args.config)
    except (OSError, ValueError) as exc:
        print(str(exc))
        return 1

    init_logging(cfg.get("logging"))
    logger = logging.getLogger("dnsoverlay.main")
    logger.info("Loaded config from %s", args.config)

    try:
        state = build_state(cfg)
    except StorageError as exc:
        logger.error("Failed to open domain storage: %s", exc)
        return 1
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    web_handle: Optional[WebServerHandle] = None
    try:
        web_handle = start_webserver(state, cfg)
        return asyncio.run(serve(cfg, state))
    finally:
        if web_handle is not None:
            web_handle.stop()
        state.close()


if __name__ == "__main__":
    raise SystemExit(main())
