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

import concurrent.futures
import logging
import selectors
import socket
import threading
import time
from typing import cast

# Largest reply read from an upstream. Without EDNS, replies are at most 512
# bytes, but some servers send more.
UDP_RECV_SIZE = 4096

DEFAULT_TIMEOUT = 5.0


class UdpForwarder:
    """Forward DNS messages to upstream servers over UDP.

    Every message gets its own socket. A single background thread waits on
    all of them with a selector and fulfils the matching future with the first
    datagram that arrives. Requests still unanswered at their deadline fail
    with TimeoutError.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        """Create an instance of UdpForwarder.

        Args:
            timeout: Seconds to wait for each reply. Defaults to 5.
        """
        self.timeout = timeout

        self.sel = selectors.DefaultSelector()
        self.pending_requests: dict[
            socket.socket, tuple[concurrent.futures.Future, float]
        ] = {}

        self.lock = threading.Lock()
        self.stop_event = threading.Event()

        self.thread = threading.Thread(
            target=self._thread_handler, name="udp-forwarder", daemon=True
        )
        self.thread.start()

    def _finish(self, sock: socket.socket) -> None:
        # Called with self.lock held
        self.sel.unregister(sock)
        sock.close()

    def _thread_handler(self) -> None:
        """Handler for the thread that handles the response for forwarded
        queries."""
        while not self.stop_event.is_set():
            events = self.sel.select(timeout=0.05)
            with self.lock:
                for key, mask in events:
                    sock = cast(socket.socket, key.fileobj)
                    # Already timed out
                    if sock not in self.pending_requests:
                        continue
                    future, _ = self.pending_requests.pop(sock)
                    try:
                        response, _ = sock.recvfrom(UDP_RECV_SIZE)
                        if not future.cancelled():
                            future.set_result(response)
                    except OSError as e:
                        if not future.cancelled():
                            future.set_exception(e)
                    finally:
                        self._finish(sock)

                now = time.monotonic()
                for sock, (future, deadline) in list(self.pending_requests.items()):
                    if deadline <= now:
                        del self.pending_requests[sock]
                        self._finish(sock)
                        if not future.cancelled():
                            future.set_exception(
                                TimeoutError(f"No reply within {self.timeout}s")
                            )

    def forward(
        self, query: bytes, addr: tuple[str, int]
    ) -> concurrent.futures.Future[bytes]:
        """Forward a DNS query to an address.

        Args:
            query: The packed DNS query to forward.
            addr: Address of the server.

        Returns:
            A future with the raw reply from the server.
        """
        future: concurrent.futures.Future[bytes] = concurrent.futures.Future()

        # New socket for each request
        family = socket.AF_INET6 if ":" in addr[0] else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_DGRAM)
        sock.setblocking(False)

        try:
            sock.sendto(query, addr)
            with self.lock:
                # The thread reads from pending_requests once the socket is readable
                self.pending_requests[sock] = (future, time.monotonic() + self.timeout)
                self.sel.register(sock, selectors.EVENT_READ)
        except (OSError, OverflowError) as e:
            # OverflowError is raised for ports outside 0-65535
            logging.warning("Unable to send query to %s:%s: %s", addr[0], addr[1], e)
            future.set_exception(e)
            with self.lock:
                self.pending_requests.pop(sock, None)
            sock.close()
        return future

    def cleanup(self) -> None:
        """Stop the thread and drop every pending request."""
        self.stop_event.set()
        self.thread.join()

        with self.lock:
            for sock, (future, _) in self.pending_requests.items():
                future.cancel()
                sock.close()
            self.pending_requests.clear()
        self.sel.close()
