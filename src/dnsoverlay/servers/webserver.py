"""Admin HTTP API for dnsoverlay (domain mappings, upstream, enabled flag).

This module provides a small FastAPI application and helpers to run it with
uvicorn in a background thread alongside the DNS listener. Every handler goes
through the shared ResolverState, so changes take effect on the next query.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..resolver_state import ResolverState
from ..storage import StorageError

logger = logging.getLogger("dnsoverlay.webserver")


class DomainEntryModel(BaseModel):
    name: str
    ip: ipaddress.IPv4Address


class DomainListModel(BaseModel):
    backend: str
    domains: List[DomainEntryModel]


class DomainBody(BaseModel):
    ip: ipaddress.IPv4Address


class UpstreamModel(BaseModel):
    host: str = Field(min_length=1)
    port: int = Field(default=53, ge=1, le=65535)


class EnabledModel(BaseModel):
    enabled: bool


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _storage_unavailable(exc: StorageError) -> HTTPException:
    logger.warning("Domain storage error in admin API: %s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"domain storage unavailable: {exc}",
    )


def _build_auth_dependency(web_cfg: Dict[str, Any]):
    """Build a FastAPI dependency enforcing optional admin auth.

    Inputs:
      - web_cfg: webserver config dict from YAML (or {}).

    Outputs:
      - Dependency callable usable with FastAPI Depends().

    Modes:
      - none (default): no authentication.
      - token: require Authorization: Bearer <token> or X-API-Key header.
    """

    auth_cfg = (web_cfg.get("auth") or {}) if isinstance(web_cfg, dict) else {}
    mode = str(auth_cfg.get("mode", "none")).lower()
    token = auth_cfg.get("token")

    async def _no_auth(_request: Request) -> None:
        return None

    async def _token_auth(request: Request) -> None:
        if not token:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="webserver.auth.token not configured",
            )
        hdr = request.headers.get("authorization") or ""
        api_key = request.headers.get("x-api-key")
        if hdr.lower().startswith("bearer "):
            provided = hdr[7:].strip()
        else:
            provided = api_key.strip() if api_key else ""
        if not provided or provided != str(token):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="unauthorized",
                headers={"WWW-Authenticate": "Bearer"},
            )

    if mode == "token":
        return _token_auth
    return _no_auth


def create_app(state: ResolverState, config: Optional[Dict[str, Any]] = None) -> FastAPI:
    """Create the FastAPI app exposing the administrative surface.

    Inputs:
      - state: ResolverState shared with the DNS server.
      - config: Full configuration mapping; only the ``webserver`` block is read.

    Outputs:
      - FastAPI application instance.

    Example:
      >>> app = create_app(ResolverState("8.8.8.8:53"), {})
    """

    web_cfg = ((config or {}).get("webserver") or {}) if isinstance(config, dict) else {}
    app = FastAPI(title="dnsoverlay admin API")
    app.state.resolver_state = state
    auth_dep = _build_auth_dependency(web_cfg)

    @app.get("/api/v1/health")
    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "server_time": _utc_now_iso()}

    @app.get(
        "/api/v1/domains",
        response_model=DomainListModel,
        dependencies=[Depends(auth_dep)],
    )
    async def list_domains() -> DomainListModel:
        try:
            entries = await state.list_domains()
        except StorageError as exc:
            raise _storage_unavailable(exc)
        entries = sorted(entries, key=lambda item: item[0])
        return DomainListModel(
            backend=state.backend_name,
            domains=[DomainEntryModel(name=name, ip=ip) for name, ip in entries],
        )

    @app.put(
        "/api/v1/domains/{name}",
        response_model=DomainEntryModel,
        dependencies=[Depends(auth_dep)],
    )
    async def put_domain(name: str, body: DomainBody) -> DomainEntryModel:
        try:
            await state.add_domain(name, body.ip)
        except StorageError as exc:
            raise _storage_unavailable(exc)
        logger.info("Admin set %s -> %s", name, body.ip)
        return DomainEntryModel(name=name, ip=body.ip)

    @app.delete("/api/v1/domains/{name}", dependencies=[Depends(auth_dep)])
    async def delete_domain(name: str) -> Dict[str, Any]:
        try:
            await state.remove_domain(name)
        except StorageError as exc:
            raise _storage_unavailable(exc)
        logger.info("Admin removed %s", name)
        return {"removed": name}

    @app.get(
        "/api/v1/resolve/{name}",
        response_model=DomainEntryModel,
        dependencies=[Depends(auth_dep)],
    )
    async def resolve(name: str) -> DomainEntryModel:
        try:
            ip = await state.resolve(name)
        except StorageError as exc:
            raise _storage_unavailable(exc)
        if ip is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"no mapping for {name}"
            )
        return DomainEntryModel(name=name, ip=ip)

    @app.get(
        "/api/v1/upstream",
        response_model=UpstreamModel,
        dependencies=[Depends(auth_dep)],
    )
    async def get_upstream() -> UpstreamModel:
        host, port = state.upstream
        return UpstreamModel(host=host, port=port)

    @app.put(
        "/api/v1/upstream",
        response_model=UpstreamModel,
        dependencies=[Depends(auth_dep)],
    )
    async def put_upstream(body: UpstreamModel) -> UpstreamModel:
        state.set_upstream((body.host, body.port))
        logger.info("Admin set upstream to %s:%d", body.host, body.port)
        return body

    @app.get(
        "/api/v1/enabled",
        response_model=EnabledModel,
        dependencies=[Depends(auth_dep)],
    )
    async def get_enabled() -> EnabledModel:
        return EnabledModel(enabled=state.enabled)

    @app.put(
        "/api/v1/enabled",
        response_model=EnabledModel,
        dependencies=[Depends(auth_dep)],
    )
    async def put_enabled(body: EnabledModel) -> EnabledModel:
        state.set_enabled(body.enabled)
        logger.info("Admin set enabled=%s", body.enabled)
        return body

    return app


class WebServerHandle:
    """Handle for a background admin webserver thread.

    Inputs (constructor):
      - thread: Thread running the uvicorn server loop.
      - server: Optional uvicorn.Server instance, used to request exit.

    Outputs:
      - WebServerHandle instance with stop() and is_running().
    """

    def __init__(self, thread: threading.Thread, server: Any | None = None) -> None:
        self._thread = thread
        self._server = server

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        """Ask uvicorn to exit and wait up to timeout seconds for the thread."""

        if self._server is not None:
            self._server.should_exit = True
        self._thread.join(timeout=timeout)


def start_webserver(
    state: ResolverState, config: Dict[str, Any]
) -> Optional[WebServerHandle]:
    """Start the admin HTTP API with uvicorn in a daemon thread.

    Inputs:
      - state: ResolverState shared with the DNS server.
      - config: Full configuration mapping.

    Outputs:
      - WebServerHandle when webserver.enabled is true; otherwise None.
    """

    web_cfg = (config.get("webserver") or {}) if isinstance(config, dict) else {}
    if not web_cfg.get("enabled", False):
        return None

    import uvicorn

    host = str(web_cfg.get("host", "127.0.0.1"))
    port = int(web_cfg.get("port", 5380))

    auth_cfg = web_cfg.get("auth") or {}
    mode = str(auth_cfg.get("mode", "none")).lower()
    if mode == "none" and host in ("0.0.0.0", "::"):
        logger.warning(
            "Admin API is bound to %s without authentication; consider auth.mode: token",
            host,
        )

    app = create_app(state, config)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))

    def _runner() -> None:
        try:
            server.run()
        except Exception:  # pragma: no cover
            logger.exception("Unhandled exception in webserver thread")

    thread = threading.Thread(target=_runner, name="dnsoverlay-webserver", daemon=True)
    thread.start()
    logger.info("Started admin API on %s:%d", host, port)
    return WebServerHandle(thread, server)
