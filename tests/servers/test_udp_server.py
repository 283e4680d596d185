"""
Brief: End-to-end tests for the UDP listener: local answers, relay, SERVFAIL,
dropped garbage and the shutdown lifecycle.

Inputs:
  - None

Outputs:
  - None
"""

import asyncio
import socket
import time

import pytest
from dnslib import RCODE, DNSRecord

from dnsoverlay.resolver_state import ResolverState
from dnsoverlay.servers.udp_server import ServerState, run_udp_server


async def _exchange(addr, payload, timeout=3.0):
    """
    Brief: Send one datagram to addr and wait for a single reply.

    Inputs:
      - addr: (host, port) of the listener
      - payload: bytes to send
      - timeout: seconds to wait for the reply

    Outputs:
      - bytes reply, or None when nothing arrived in time
    """
    loop = asyncio.get_running_loop()
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.setblocking(False)
    try:
        sock.bind(("127.0.0.1", 0))
        await loop.sock_sendto(sock, payload, addr)
        try:
            return await asyncio.wait_for(loop.sock_recv(sock, 4096), timeout)
        except asyncio.TimeoutError:
            return None
    finally:
        sock.close()


def _state(upstream):
    state = ResolverState(upstream)
    state.add_domain_sync("local.dev", "127.0.0.1")
    return state


def test_local_answer_end_to_end(silent_upstream):
    """
    Brief: local.dev -> 127.0.0.1 with the client's transaction ID.

    Inputs:
      - silent_upstream: stub upstream that must not be contacted

    Outputs:
      - None: Asserts reply fields and clean shutdown
    """

    async def run():
        handle = await run_udp_server(("127.0.0.1", 0), _state(silent_upstream.addr))
        try:
            assert handle.state is ServerState.RUNNING
            q = DNSRecord.question("local.dev", "A")
            q.header.id = 0xBEEF
            reply = await _exchange(handle.address, q.pack())
        finally:
            await handle.shutdown()
        return reply, handle

    reply, handle = asyncio.run(run())
    parsed = DNSRecord.parse(reply)
    assert parsed.header.id == 0xBEEF
    assert parsed.header.aa == 1
    assert str(parsed.rr[0].rdata) == "127.0.0.1"
    assert silent_upstream.received == []
    assert handle.state is ServerState.STOPPED


def test_unmapped_query_relayed_from_upstream(dns_upstream):
    async def run():
        handle = await run_udp_server(("127.0.0.1", 0), _state(dns_upstream.addr))
        try:
            q = DNSRecord.question("example.org", "A")
            reply = await _exchange(handle.address, q.pack())
        finally:
            await handle.shutdown()
        return q, reply

    q, reply = asyncio.run(run())
    parsed = DNSRecord.parse(reply)
    assert parsed.header.id == q.header.id
    assert str(parsed.rr[0].rdata) == "192.0.2.7"
    assert dns_upstream.received == [q.pack()]


def test_silent_upstream_servfail_after_default_timeout(silent_upstream):
    """
    Brief: With the default 2s forward timeout, a silent upstream yields
    SERVFAIL shortly after the deadline.

    Inputs:
      - silent_upstream: stub upstream that never replies

    Outputs:
      - None: Asserts SERVFAIL timing and header
    """

    async def run():
        handle = await run_udp_server(("127.0.0.1", 0), _state(silent_upstream.addr))
        try:
            q = DNSRecord.question("example.org", "A")
            start = time.monotonic()
            reply = await _exchange(handle.address, q.pack(), timeout=4.0)
            elapsed = time.monotonic() - start
        finally:
            await handle.shutdown()
        return q, reply, elapsed

    q, reply, elapsed = asyncio.run(run())
    parsed = DNSRecord.parse(reply)
    assert parsed.header.id == q.header.id
    assert parsed.header.rcode == RCODE.SERVFAIL
    assert 1.9 <= elapsed < 3.5


def test_short_garbage_gets_no_reply_and_server_keeps_serving(silent_upstream):
    async def run():
        handle = await run_udp_server(("127.0.0.1", 0), _state(silent_upstream.addr))
        try:
            garbage = await _exchange(handle.address, b"\x01\x02\x03", timeout=0.3)
            q = DNSRecord.question("local.dev", "A")
            reply = await _exchange(handle.address, q.pack())
        finally:
            await handle.shutdown()
        return garbage, reply

    garbage, reply = asyncio.run(run())
    assert garbage is None
    assert str(DNSRecord.parse(reply).rr[0].rdata) == "127.0.0.1"


def test_concurrent_queries_are_handled_independently(dns_upstream):
    async def run():
        handle = await run_udp_server(
            ("127.0.0.1", 0), _state(dns_upstream.addr), timeout_ms=1000
        )
        try:
            names = ["local.dev", "a.example", "b.example", "local.dev"]
            queries = [DNSRecord.question(n, "A") for n in names]
            replies = await asyncio.gather(
                *[_exchange(handle.address, q.pack()) for q in queries]
            )
        finally:
            await handle.shutdown()
        return queries, replies

    queries, replies = asyncio.run(run())
    for q, reply in zip(queries, replies):
        parsed = DNSRecord.parse(reply)
        assert parsed.header.id == q.header.id
        expected = "127.0.0.1" if str(q.q.qname) == "local.dev." else "192.0.2.7"
        assert str(parsed.rr[0].rdata) == expected


def test_shutdown_is_idempotent_and_closes_socket(silent_upstream):
    async def run():
        handle = await run_udp_server(("127.0.0.1", 0), _state(silent_upstream.addr))
        await handle.shutdown()
        await handle.shutdown()
        after = await _exchange(handle.address, DNSRecord.question("local.dev").pack(), 0.3)
        return handle, after

    handle, after = asyncio.run(run())
    assert handle.state is ServerState.STOPPED
    assert after is None


def test_shutdown_waits_for_in_flight_forward(silent_upstream):
    """
    Brief: A query already being forwarded still gets its SERVFAIL after
    shutdown is requested.

    Inputs:
      - silent_upstream: stub upstream that never replies

    Outputs:
      - None: Asserts SERVFAIL arrives and shutdown waited for it
    """

    async def run():
        handle = await run_udp_server(
            ("127.0.0.1", 0), _state(silent_upstream.addr), timeout_ms=500
        )
        q = DNSRecord.question("example.org", "A")
        pending = asyncio.ensure_future(_exchange(handle.address, q.pack(), 2.0))
        await asyncio.sleep(0.1)
        await handle.shutdown()
        return q, await pending, handle

    q, reply, handle = asyncio.run(run())
    assert handle.state is ServerState.STOPPED
    parsed = DNSRecord.parse(reply)
    assert parsed.header.id == q.header.id
    assert parsed.header.rcode == RCODE.SERVFAIL


def test_bind_failure_raises_oserror(silent_upstream):
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("127.0.0.1", 0))
    taken = blocker.getsockname()

    async def run():
        await run_udp_server(taken, _state(silent_upstream.addr))

    try:
        with pytest.raises(OSError):
            asyncio.run(run())
    finally:
        blocker.close()
