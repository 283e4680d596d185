"""
Brief: Global pytest configuration: src/ on sys.path, per-test 10s timeout and
local UDP upstream stubs.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import socket
import sys
import threading
from typing import Callable, List, Optional

import pytest
from dnslib import QTYPE, RR, A, DNSRecord

# Ensure 'src' is on sys.path so 'dnsoverlay' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


UPSTREAM_ANSWER_IP = "192.0.2.7"


class UDPStub:
    """
    Brief: Threaded UDP responder standing in for an upstream resolver.

    Inputs:
      - responder: callable(bytes) -> Optional[bytes]; None means stay silent.

    Outputs:
      - UDPStub with .addr and .received (list of raw datagrams seen).
    """

    def __init__(self, responder: Callable[[bytes], Optional[bytes]]):
        self.responder = responder
        self.received: List[bytes] = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.addr = self.sock.getsockname()
        self._stop = threading.Event()
        self.thread = threading.Thread(target=self._loop, daemon=True)

    def start(self):
        self.thread.start()
        return self

    def _loop(self):
        self.sock.settimeout(0.1)
        while not self._stop.is_set():
            try:
                data, peer = self.sock.recvfrom(4096)
            except (socket.timeout, OSError):
                continue
            self.received.append(data)
            reply = self.responder(data)
            if reply is not None:
                try:
                    self.sock.sendto(reply, peer)
                except OSError:
                    pass

    def close(self):
        self._stop.set()
        self.thread.join(timeout=1.0)
        self.sock.close()


def answer_with_fixed_a(data: bytes) -> bytes:
    """Brief: Reply to any query with one A record for UPSTREAM_ANSWER_IP."""
    request = DNSRecord.parse(data)
    reply = request.reply()
    reply.add_answer(
        RR(request.q.qname, QTYPE.A, rdata=A(UPSTREAM_ANSWER_IP), ttl=300)
    )
    return reply.pack()


@pytest.fixture
def echo_upstream():
    stub = UDPStub(lambda data: data).start()
    try:
        yield stub
    finally:
        stub.close()


@pytest.fixture
def dns_upstream():
    stub = UDPStub(answer_with_fixed_a).start()
    try:
        yield stub
    finally:
        stub.close()


@pytest.fixture
def silent_upstream():
    stub = UDPStub(lambda data: None).start()
    try:
        yield stub
    finally:
        stub.close()
