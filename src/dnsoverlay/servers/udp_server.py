import asyncio
import enum
import logging
import socket
from typing import Optional, Set, Tuple

from ..resolver_state import ResolverState
from .handler import FORWARD_TIMEOUT_MS, handle_packet

logger = logging.getLogger("dnsoverlay.server")

MAX_DATAGRAM = 2048


class ServerState(enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class UDPServer:
    """
    Listening socket plus a single receive loop that spawns one task per datagram.

    Inputs (constructor):
      - listen: (host, port) to bind. Port 0 picks a free port.
      - state: ResolverState shared by every handler.
      - timeout_ms: Upstream reply deadline passed to each handler.

    Example use:
        Normally created through run_udp_server(); the returned ServerHandle
        is the public control surface.
    """

    def __init__(
        self,
        listen: Tuple[str, int],
        state: ResolverState,
        *,
        timeout_ms: int = FORWARD_TIMEOUT_MS,
    ) -> None:
        self.listen = (str(listen[0]), int(listen[1]))
        self.resolver_state = state
        self.timeout_ms = int(timeout_ms)
        self.state = ServerState.CREATED
        self.sock: Optional[socket.socket] = None
        self._shutdown = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    def bind(self) -> Tuple[str, int]:
        """Brief: Create and bind the listening socket.

        Outputs:
          - The bound (host, port).

        Raises:
          - OSError: address resolution or bind failed; no socket is left open.
        """

        infos = socket.getaddrinfo(
            self.listen[0], self.listen[1], type=socket.SOCK_DGRAM, flags=socket.AI_PASSIVE
        )
        family, _, _, _, addr = infos[0]
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.setblocking(False)
            sock.bind(addr)
        except OSError:
            sock.close()
            raise
        self.sock = sock
        self.state = ServerState.RUNNING
        bound = sock.getsockname()
        return str(bound[0]), int(bound[1])

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def _spawn(self, packet: bytes, peer: Tuple[str, int]) -> None:
        task = asyncio.get_running_loop().create_task(self._handle(packet, peer))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle(self, packet: bytes, peer: Tuple[str, int]) -> None:
        try:
            await handle_packet(
                packet, peer, self.sock, self.resolver_state, timeout_ms=self.timeout_ms
            )
        except Exception as e:
            logger.warning("Error handling DNS packet from %s: %s", peer, e)

    async def serve(self) -> None:
        """Brief: Receive loop; returns once shutdown was requested and drained.

        The shutdown event is checked before every receive and wins over a
        datagram that becomes ready at the same time. Handler tasks already
        running when the loop exits are awaited, not cancelled, and the socket
        is closed only after they finish so their replies can still be sent.
        """

        loop = asyncio.get_running_loop()
        stop = loop.create_task(self._shutdown.wait())
        try:
            while not self._shutdown.is_set():
                recv = loop.create_task(loop.sock_recvfrom(self.sock, MAX_DATAGRAM))
                await asyncio.wait({stop, recv}, return_when=asyncio.FIRST_COMPLETED)
                if stop.done():
                    recv.cancel()
                    break
                try:
                    packet, peer = recv.result()
                except OSError as e:
                    logger.warning("recv_from error: %s", e)
                    continue
                self._spawn(packet, peer)
        finally:
            stop.cancel()
            self.state = ServerState.SHUTTING_DOWN
            logger.info("Shutting down DNS server on %s:%d", *self.listen)
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            self.sock.close()
            self.state = ServerState.STOPPED
            logger.info("DNS server stopped")


class ServerHandle:
    """Control handle returned by run_udp_server().

    Inputs (constructor):
      - server: The running UDPServer.
      - task: asyncio Task running UDPServer.serve().
      - address: Bound (host, port).

    Outputs:
      - ServerHandle with shutdown(), wait_closed(), address and state.
    """

    def __init__(
        self, server: UDPServer, task: asyncio.Task, address: Tuple[str, int]
    ) -> None:
        self._server = server
        self._task = task
        self.address = address
        self._shutdown_requested = False

    @property
    def state(self) -> ServerState:
        return self._server.state

    async def shutdown(self) -> None:
        """Brief: Stop accepting datagrams and wait for the loop to finish.

        A second call is a no-op.
        """

        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        self._server.request_shutdown()
        await self.wait_closed()

    async def wait_closed(self) -> None:
        await asyncio.shield(self._task)


async def run_udp_server(
    listen: Tuple[str, int],
    state: ResolverState,
    *,
    timeout_ms: int = FORWARD_TIMEOUT_MS,
) -> ServerHandle:
    """
    Brief: Bind the listening socket and start the receive loop.

    Inputs:
    - listen: (host, port) to bind
    - state: shared ResolverState
    - timeout_ms: upstream reply deadline per forwarded query

    Outputs:
    - ServerHandle: running server; call shutdown() to stop it

    Raises:
    - OSError: binding failed; the server never starts

    Example:
        >>> handle = await run_udp_server(('127.0.0.1', 5353), state)
        >>> await handle.shutdown()
    """
    server = UDPServer(listen, state, timeout_ms=timeout_ms)
    address = server.bind()
    logger.info("Local DNS UDP listening on %s:%d", *address)
    task = asyncio.get_running_loop().create_task(server.serve(), name="dnsoverlay-udp")
    return ServerHandle(server, task, address)
