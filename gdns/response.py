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

import logging
import socket

from .cache import AnswerCache
from .directory import UpstreamServer
from .forwarder import UdpForwarder
from .protocol import (DNSAnswer, DNSDecodeError, DNSHeader, DNSQuery,
                       DNSQuestion, format_rdata, pack_record, unpack_all,
                       unpack_record)
from .selector import GeoSelector


class ResponseHandler:
    """
    Answer one datagram from a client.

    The upstream is chosen once, from the client's address, and every
    question in the datagram that isn't cached is forwarded to it, one at a
    time. Answers are returned in question order.
    """

    def __init__(
        self,
        selector: GeoSelector,
        cache: AnswerCache,
        forwarder: UdpForwarder,
        udp_sock: socket.socket,
        udp_addr: tuple[str, int],
    ) -> None:
        """
        Create a ResponseHandler instance.

        Args:
            selector: Picks the upstream for the client.
            cache: The answer cache.
            forwarder: Sends questions upstream.
            udp_sock: The server's UDP socket, used to reply.
            udp_addr: Address of the client.
        """
        self.selector = selector
        self.cache = cache
        self.forwarder = forwarder

        self.udp_sock = udp_sock
        self.udp_addr = udp_addr

        self.upstream: UpstreamServer | None = None
        self.query: DNSQuery | None = None
        self.answers: list[DNSAnswer] = []

    def start(self, buf: bytes) -> None:
        """
        Handle a datagram, replying to the client unless it is malformed.

        Args:
            buf: The datagram.
        """
        self.upstream = self.selector.select(self.udp_addr[0])

        try:
            self.query = unpack_all(buf)
        except DNSDecodeError as e:
            logging.warning("Dropping malformed query from %s: %s", self.udp_addr[0], e)
            return

        if self.query.header.qr:
            logging.warning("Dropping response sent by %s", self.udp_addr[0])
            return

        logging.debug(
            "Received query %d from %s: %s",
            self.query.header.id_,
            self.udp_addr[0],
            self.query.questions,
        )

        for question in self.query.questions:
            self.answers.extend(self._resolve(question))

        self._send()

    def _resolve(self, question: DNSQuestion) -> list[DNSAnswer]:
        """Answer one question, from the cache or else from the upstream."""
        cached = self.cache.lookup(question)
        if cached:
            logging.debug("Cache hit for %s", question)
            answers = []
            for raw in cached:
                try:
                    answers.append(unpack_record(raw))
                except DNSDecodeError:
                    logging.warning("Skipping unreadable cached answer for %s", question)
            return answers

        logging.debug("Cache miss for %s, asking %s", question, self.upstream.address)
        return self._forward(question)

    def _forward(self, question: DNSQuestion) -> list[DNSAnswer]:
        """Send a single question upstream and cache what comes back."""
        assert self.query is not None and self.upstream is not None

        send = DNSQuery(
            DNSHeader(id_=self.query.header.id_, rd=self.query.header.rd),
            [question],
        ).pack()

        future = self.forwarder.forward(send, self.upstream.addr)
        try:
            reply = unpack_all(future.result())
        except TimeoutError:
            logging.warning(
                "Upstream %s did not answer %s in time", self.upstream.address, question
            )
            return []
        except (OSError, OverflowError) as e:
            logging.warning(
                "Unable to reach upstream %s for %s: %s",
                self.upstream.address,
                question,
                e,
            )
            return []
        except DNSDecodeError as e:
            logging.warning(
                "Unreadable reply from upstream %s for %s: %s",
                self.upstream.address,
                question,
                e,
            )
            return []

        if reply.answers:
            self.cache.store(question, [pack_record(answer) for answer in reply.answers])
            logging.debug(
                "Cached %s -> %s",
                question,
                [format_rdata(answer) for answer in reply.answers],
            )
        return reply.answers

    def _send(self) -> None:
        """Send the aggregated answers back to the client."""
        assert self.query is not None

        header = DNSHeader(
            id_=self.query.header.id_,  # Same id
            qr=1,  # Response
            opcode=self.query.header.opcode,
            rd=self.query.header.rd,
            ra=1,
        )
        buf = DNSQuery(header, self.query.questions, self.answers).pack()

        # Lock is unnecessary here since .sendto is thread safe
        self.udp_sock.sendto(buf, self.udp_addr)
        logging.debug(
            "Sent %d answers to %s for query %d",
            len(self.answers),
            self.udp_addr[0],
            header.id_,
        )
