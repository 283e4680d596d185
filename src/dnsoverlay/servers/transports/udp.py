import asyncio
import socket


class UDPError(Exception):
    """
    Brief: DNS-over-UDP forwarding error (timeout, send or receive failure).

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


async def udp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    timeout_ms: int = 2000,
) -> bytes:
    """
    Brief: Perform a single UDP DNS exchange on a fresh ephemeral socket.

    Inputs:
    - host: upstream resolver host/IP
    - port: upstream UDP port
    - query: wire-format DNS query bytes, sent unmodified
    - timeout_ms: deadline for the reply in milliseconds

    Outputs:
    - bytes: the first datagram received from the upstream, verbatim

    The socket is connected to the upstream so the kernel only delivers
    datagrams from that peer. It is never shared with another query and is
    closed on every path.

    Example:
        >>> try:
        ...     asyncio.run(udp_query('127.0.0.1', 9, b'\\x00\\x01', timeout_ms=100))
        ... except UDPError:
        ...     pass
    """
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(
            host, int(port), type=socket.SOCK_DGRAM, proto=socket.IPPROTO_UDP
        )
        family, _, _, _, addr = infos[0]
        s = socket.socket(family, socket.SOCK_DGRAM)
    except OSError as e:
        raise UDPError(f"UDP error: {e}") from e

    try:
        s.setblocking(False)
        await loop.sock_connect(s, addr)
        await loop.sock_sendall(s, query)
        return await asyncio.wait_for(loop.sock_recv(s, 4096), timeout_ms / 1000.0)
    except asyncio.TimeoutError as e:
        raise UDPError(f"UDP timeout after {timeout_ms}ms from {host}:{port}") from e
    except OSError as e:
        raise UDPError(f"UDP error: {e}") from e
    finally:
        s.close()
