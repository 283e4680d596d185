import asyncio
import ipaddress
import logging
import socket
from typing import Optional, Tuple

from dnslib import OPCODE, QTYPE, RCODE, RR, A, DNSHeader, DNSQuestion, DNSRecord

from ..resolver_state import ResolverState
from ..storage import StorageError
from .transports.udp import UDPError, udp_query

logger = logging.getLogger("dnsoverlay.server")

ANSWER_TTL = 60
FORWARD_TIMEOUT_MS = 2000
_LOCAL_QTYPES = (QTYPE.A, QTYPE.ANY)


def build_answer(
    request: DNSRecord, question: DNSQuestion, ip: ipaddress.IPv4Address
) -> DNSRecord:
    """Brief: Authoritative single-A-record answer for the first question.

    Inputs:
      - request: Parsed client query (supplies the transaction ID and RD bit).
      - question: The question being answered, echoed back verbatim.
      - ip: Address to return.

    Outputs:
      - DNSRecord with QR=1, AA=1, opcode QUERY and one A record, TTL 60.
    """

    reply = DNSRecord(
        DNSHeader(
            id=request.header.id,
            qr=1,
            aa=1,
            rd=request.header.rd,
            opcode=OPCODE.QUERY,
        ),
        q=question,
    )
    reply.add_answer(RR(question.qname, QTYPE.A, rdata=A(str(ip)), ttl=ANSWER_TTL))
    return reply


def build_servfail(request: DNSRecord, question: DNSQuestion) -> DNSRecord:
    """Brief: SERVFAIL reply echoing the question, no answers."""

    return DNSRecord(
        DNSHeader(
            id=request.header.id,
            qr=1,
            aa=1,
            rd=request.header.rd,
            opcode=OPCODE.QUERY,
            rcode=RCODE.SERVFAIL,
        ),
        q=question,
    )


async def _lookup_local(
    state: ResolverState, qname: str
) -> Optional[ipaddress.IPv4Address]:
    if not state.enabled:
        logger.debug("Local answers disabled; forwarding %s", qname)
        return None
    try:
        return await state.resolve(qname)
    except StorageError as exc:
        logger.warning("Domain storage lookup failed for %s, forwarding: %s", qname, exc)
        return None


async def handle_packet(
    packet: bytes,
    peer: Tuple[str, int],
    sock: socket.socket,
    state: ResolverState,
    *,
    timeout_ms: int = FORWARD_TIMEOUT_MS,
) -> None:
    """Answer, forward or SERVFAIL a single DNS datagram.

    Inputs:
      - packet: Raw UDP payload from the client.
      - peer: Client address the reply is sent to.
      - sock: Non-blocking listening socket shared by all handlers for replies.
      - state: Shared ResolverState.
      - timeout_ms: Upstream reply deadline.

    Outputs:
      - None. Sends at most one datagram to peer.

    Raises:
      - UDPError: forwarding failed. The SERVFAIL reply has already been sent
        when this propagates; the caller only needs to log it.

    Undecodable packets and messages without questions are dropped without a
    reply. Only the first question is considered. A local mapping answers A
    and ANY queries; every other case forwards the query bytes unchanged.
    """
    loop = asyncio.get_running_loop()

    try:
        request = DNSRecord.parse(packet)
    except Exception as exc:
        logger.debug("Dropping undecodable packet from %s: %s", peer, exc)
        return

    if not request.questions:
        logger.debug("Dropping query without questions from %s", peer)
        return

    question = request.questions[0]
    qname = str(question.qname)
    qtype = question.qtype
    logger.debug("Query from %s: %s %s", peer, qname, QTYPE.get(qtype, qtype))

    ip = await _lookup_local(state, qname)
    if ip is not None and qtype in _LOCAL_QTYPES:
        reply = build_answer(request, question, ip)
        await loop.sock_sendto(sock, reply.pack(), peer)
        logger.info("Answered %s -> %s to %s", qname, ip, peer)
        return

    host, port = state.upstream
    try:
        response = await udp_query(host, port, packet, timeout_ms=timeout_ms)
    except UDPError:
        reply = build_servfail(request, question)
        await loop.sock_sendto(sock, reply.pack(), peer)
        logger.info("Answered %s -> SERVFAIL to %s", qname, peer)
        raise

    await loop.sock_sendto(sock, response, peer)
    logger.debug("Relayed %d bytes from %s:%d to %s", len(response), host, port, peer)
