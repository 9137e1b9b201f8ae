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

import pytest

from gdns.protocol import (DNSAnswer, DNSHeader, DNSQuery, RTypes, unpack_all)
from gdns.storage import MemoryStore, SQLiteStore


class MockUpstream:
    """A scripted DNS server on the loopback interface.

    Replies to A questions with the addresses in `records`. Every query it
    receives is kept in `queries`.
    """

    def __init__(self, records=None, mode="reply", host="127.0.0.1"):
        self.records = records or {}
        # reply, silent or garbage
        self.mode = mode
        self.queries: list[DNSQuery] = []

        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind((host, 0))
        self.sock.settimeout(0.05)
        self.addr = self.sock.getsockname()

        self.stop_event = threading.Event()
        self.thread = threading.Thread(target=self._run, daemon=True)

    def _run(self):
        while not self.stop_event.is_set():
            try:
                data, addr = self.sock.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                break

            query = unpack_all(data)
            self.queries.append(query)

            if self.mode == "silent":
                continue
            if self.mode == "garbage":
                self.sock.sendto(b"\x00\x01", addr)
                continue

            answers = []
            for question in query.questions:
                for ip in self.records.get(question.decoded_name, []):
                    answers.append(
                        DNSAnswer(
                            decoded_name=question.decoded_name,
                            type_=RTypes.A,
                            ttl=300,
                            rdata=socket.inet_aton(ip),
                        )
                    )
            reply = DNSQuery(
                DNSHeader(id_=query.header.id_, qr=1, rd=query.header.rd, ra=1),
                query.questions,
                answers,
            )
            self.sock.sendto(reply.pack(), addr)

    def __enter__(self):
        self.thread.start()
        return self

    def __exit__(self, *exc):
        self.stop_event.set()
        self.thread.join()
        self.sock.close()


@pytest.fixture
def mock_upstream():
    with MockUpstream(
        {
            "example.com": ["93.184.216.34"],
            "example.org": ["93.184.215.14"],
            "multi.example": ["192.0.2.10", "192.0.2.11"],
        }
    ) as upstream:
        yield upstream


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        s = MemoryStore()
    else:
        s = SQLiteStore(":memory:")
    s.prepare()
    yield s
    s.close()


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
