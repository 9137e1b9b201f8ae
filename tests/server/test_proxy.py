# geodnscache
# A geographically-aware caching DNS proxy
# Copyright (c) 2025 ninjamar

# MIT License

# Copyright (c) 2025 ninjamar

# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:

# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.

# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

import socket
import threading
import time

import pytest

from gdns.cache import AnswerCache
from gdns.client import Client
from gdns.config import get_kwargs
from gdns.directory import NoUpstreamError, UpstreamDirectory, UpstreamServer
from gdns.forwarder import UdpForwarder
from gdns.geo import StaticLocator
from gdns.manager import ServerManager
from gdns.protocol import (DNSHeader, DNSQuery, DNSQuestion, format_rdata,
                           unpack_all)
from gdns.response import ResponseHandler
from gdns.selector import GeoSelector
from gdns.storage import MemoryStore

from conftest import MockUpstream

PARIS = (2.35, 48.85)
SYDNEY = (151.21, -33.87)

# Clients in 203.0.113.0/24 are in Paris
CLIENT = ("203.0.113.5", 40000)
UNKNOWN_CLIENT = ("127.0.0.1", 40000)


class FakeSocket:
    """Stands in for the server socket, keeping what is sent."""

    def __init__(self):
        self.sent = []

    def sendto(self, buf, addr):
        self.sent.append((buf, addr))


class Proxy:
    """Everything a ResponseHandler needs, wired to a list of upstreams."""

    def __init__(self, servers, timeout=2.0):
        self.storage = MemoryStore()
        self.storage.prepare()
        self.directory = UpstreamDirectory(self.storage)
        self.directory.load(servers)

        self.selector = GeoSelector(
            StaticLocator([("203.0.113.0/24", PARIS)]), self.directory
        )
        self.cache = AnswerCache(self.storage)
        self.forwarder = UdpForwarder(timeout=timeout)
        self.sock = FakeSocket()

    def handle(self, buf, addr=CLIENT):
        handler = ResponseHandler(
            selector=self.selector,
            cache=self.cache,
            forwarder=self.forwarder,
            udp_sock=self.sock,
            udp_addr=addr,
        )
        handler.start(buf)
        return handler

    def close(self):
        self.forwarder.cleanup()
        self.storage.close()


def local(upstream, location=PARIS):
    return UpstreamServer(upstream.addr[0], upstream.addr[1], location)


def far():
    # Nothing listens here
    return UpstreamServer("192.0.2.1", 53, SYDNEY)


def make_query(*names, id_=1234):
    return DNSQuery(
        DNSHeader(id_=id_, rd=1),
        [DNSQuestion(decoded_name=name) for name in names],
    ).pack()


@pytest.fixture
def proxy(mock_upstream):
    # The nearest upstream is not the first one
    p = Proxy([far(), local(mock_upstream)])
    yield p
    p.close()


def test_nearest_upstream(proxy, mock_upstream):
    handler = proxy.handle(make_query("example.com"))

    assert handler.upstream.address == "127.0.0.1"
    assert handler.upstream.rank == 1

    [(buf, addr)] = proxy.sock.sent
    assert addr == CLIENT

    reply = unpack_all(buf)
    assert reply.header.id_ == 1234
    assert reply.header.qr == 1
    assert reply.header.ra == 1
    assert [q.decoded_name for q in reply.questions] == ["example.com"]
    assert [format_rdata(a) for a in reply.answers] == ["93.184.216.34"]

    # The upstream was asked with the client's id
    [forwarded] = mock_upstream.queries
    assert forwarded.header.id_ == 1234
    assert forwarded.questions[0].decoded_name == "example.com"

    assert len(proxy.cache.lookup(DNSQuestion(decoded_name="example.com"))) == 1


def test_unlocated_client_uses_first_upstream(mock_upstream):
    p = Proxy([local(mock_upstream, SYDNEY), far()])
    try:
        handler = p.handle(make_query("example.com"), UNKNOWN_CLIENT)
    finally:
        p.close()

    assert handler.upstream.rank == 0
    assert handler.upstream.address == "127.0.0.1"
    [(buf, addr)] = p.sock.sent
    assert addr == UNKNOWN_CLIENT
    assert [format_rdata(a) for a in unpack_all(buf).answers] == ["93.184.216.34"]


def test_second_query_is_cached(proxy, mock_upstream):
    proxy.handle(make_query("example.com", id_=1))
    proxy.handle(make_query("EXAMPLE.com.", id_=2))

    assert len(mock_upstream.queries) == 1

    first, second = (unpack_all(buf) for buf, _ in proxy.sock.sent)
    assert second.header.id_ == 2
    assert [format_rdata(a) for a in second.answers] == [
        format_rdata(a) for a in first.answers
    ]


def test_answers_in_question_order(proxy, mock_upstream):
    proxy.handle(make_query("example.org", "multi.example", "example.com"))

    [(buf, _)] = proxy.sock.sent
    reply = unpack_all(buf)
    assert [format_rdata(a) for a in reply.answers] == [
        "93.184.215.14",
        "192.0.2.10",
        "192.0.2.11",
        "93.184.216.34",
    ]
    # One upstream query per question
    assert len(mock_upstream.queries) == 3

    # Stored answers keep their order
    proxy.handle(make_query("multi.example"))
    assert len(mock_upstream.queries) == 3
    reply = unpack_all(proxy.sock.sent[-1][0])
    assert [format_rdata(a) for a in reply.answers] == ["192.0.2.10", "192.0.2.11"]


def test_unknown_name(proxy, mock_upstream):
    proxy.handle(make_query("nothing.example"))

    [(buf, _)] = proxy.sock.sent
    assert unpack_all(buf).answers == []
    # Empty answers aren't cached
    assert proxy.cache.lookup(DNSQuestion(decoded_name="nothing.example")) == []

    proxy.handle(make_query("nothing.example"))
    assert len(mock_upstream.queries) == 2


@pytest.mark.parametrize(
    "buf",
    [
        b"",
        b"\x12",
        b"\x00" * 11,
        b"\x00\x00\x00\x00\x00\x01" + b"\x00" * 6 + b"\x05abc",
        # A label with a dot in it
        b"\x00\x00\x00\x00\x00\x01" + b"\x00" * 6 + b"\x03a.b\x03com\x00\x00\x01\x00\x01",
    ],
)
def test_malformed_query_is_dropped(proxy, mock_upstream, buf):
    proxy.handle(buf)
    assert proxy.sock.sent == []
    assert mock_upstream.queries == []


def test_response_is_dropped(proxy, mock_upstream):
    buf = DNSQuery(DNSHeader(id_=1, qr=1), [DNSQuestion(decoded_name="example.com")]).pack()
    proxy.handle(buf)
    assert proxy.sock.sent == []
    assert mock_upstream.queries == []


@pytest.mark.parametrize("mode", ["silent", "garbage"])
def test_failing_upstream(mode):
    with MockUpstream({"example.com": ["93.184.216.34"]}, mode=mode) as upstream:
        p = Proxy([local(upstream)], timeout=0.3)
        try:
            p.handle(make_query("example.com"))
            [(buf, _)] = p.sock.sent
            reply = unpack_all(buf)
            assert reply.header.id_ == 1234
            assert reply.answers == []
            assert p.cache.lookup(DNSQuestion(decoded_name="example.com")) == []
        finally:
            p.close()


def test_unreachable_upstream():
    # The only upstream never answers
    p = Proxy([far()], timeout=0.3)
    try:
        p.handle(make_query("example.com"))
    finally:
        p.close()

    [(buf, _)] = p.sock.sent
    assert unpack_all(buf).answers == []


def test_from_config_without_upstreams():
    with pytest.raises(NoUpstreamError):
        ServerManager.from_config(get_kwargs(environ={}))


def test_server(mock_upstream):
    kwargs = get_kwargs(
        overrides={
            "servers.host.host": "127.0.0.1",
            "servers.host.port": 0,
            "upstream.servers": [
                {
                    "address": "127.0.0.1",
                    "port": mock_upstream.addr[1],
                    "location": list(PARIS),
                }
            ],
            "upstream.timeout": 2.0,
        },
        environ={},
    )
    manager = ServerManager.from_config(kwargs)
    addr = manager.bind()

    thread = threading.Thread(target=manager.start, daemon=True)
    thread.start()
    assert manager.ready.wait(5)

    client = Client(timeout=2)
    try:
        query = DNSQuery(DNSHeader(id_=77, rd=1), [DNSQuestion(decoded_name="example.com")])
        first = client.resolve(query, addr).result(timeout=5)
        second = client.resolve(query, addr).result(timeout=5)
    finally:
        client.cleanup()
        manager.shutdown()
        thread.join(5)

    assert not thread.is_alive()
    assert first.header.id_ == 77
    assert [format_rdata(a) for a in first.answers] == ["93.184.216.34"]
    assert [format_rdata(a) for a in second.answers] == ["93.184.216.34"]
    assert len(mock_upstream.queries) == 1


def test_upstream_port_out_of_range():
    p = Proxy([UpstreamServer("127.0.0.1", 70000, PARIS)])
    try:
        p.handle(make_query("example.com"))
    finally:
        p.close()

    [(buf, _)] = p.sock.sent
    reply = unpack_all(buf)
    assert reply.header.id_ == 1234
    assert reply.answers == []


def test_slow_upstream_does_not_hold_up_other_clients(mock_upstream):
    # Clients from 127.0.0.3 are sent to an upstream that never answers,
    # everyone else to the first upstream
    with MockUpstream(mode="silent", host="127.0.0.2") as silent:
        storage = MemoryStore()
        storage.prepare()
        directory = UpstreamDirectory(storage)
        directory.load([local(mock_upstream, SYDNEY), local(silent, PARIS)])

        manager = ServerManager(
            host=("127.0.0.1", 0),
            selector=GeoSelector(StaticLocator([("127.0.0.3/32", PARIS)]), directory),
            cache=AnswerCache(storage),
            forwarder=UdpForwarder(timeout=3),
            storage=storage,
        )
        addr = manager.bind()
        thread = threading.Thread(target=manager.start, daemon=True)
        thread.start()
        assert manager.ready.wait(5)

        slow_client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        slow_client.bind(("127.0.0.3", 0))
        client = Client(timeout=2)
        try:
            slow_client.sendto(make_query("example.com", id_=1), addr)

            deadline = time.monotonic() + 2
            while not silent.queries and time.monotonic() < deadline:
                time.sleep(0.01)
            assert len(silent.queries) == 1

            start = time.monotonic()
            query = DNSQuery(
                DNSHeader(id_=2, rd=1), [DNSQuestion(decoded_name="example.com")]
            )
            reply = client.resolve(query, addr).result(timeout=5)
            assert time.monotonic() - start < 1.5
            assert [format_rdata(a) for a in reply.answers] == ["93.184.216.34"]

            # The first client is still waiting
            slow_client.settimeout(0.05)
            with pytest.raises(socket.timeout):
                slow_client.recvfrom(4096)

            # Until its upstream times out
            slow_client.settimeout(5)
            buf, _ = slow_client.recvfrom(4096)
            reply = unpack_all(buf)
            assert reply.header.id_ == 1
            assert reply.answers == []
        finally:
            slow_client.close()
            client.cleanup()
            manager.shutdown()
            thread.join(5)

    assert not thread.is_alive()
