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

"""
A small client, used by the `query` command and the tests.

The client takes a DNSQuery, sends it with a forwarder, and returns a future
that resolves to the decoded reply.
"""

import concurrent.futures

from .forwarder import DEFAULT_TIMEOUT, UdpForwarder
from .protocol import DNSQuery, unpack_all


class Client:
    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.forwarder = UdpForwarder(timeout=timeout)

    def resolve(
        self, query: DNSQuery, addr: tuple[str, int]
    ) -> concurrent.futures.Future[DNSQuery]:
        """Send a query to a server.

        Args:
            query: The query.
            addr: Address of the server.

        Returns:
            A future with the decoded reply. It fails with TimeoutError if
            the server doesn't answer, or DNSDecodeError if the reply is
            malformed.
        """
        return_future: concurrent.futures.Future[DNSQuery] = (
            concurrent.futures.Future()
        )

        def unpack_query(f: concurrent.futures.Future[bytes]) -> None:
            try:
                return_future.set_result(unpack_all(f.result()))
            except Exception as e:
                return_future.set_exception(e)

        self.forwarder.forward(query.pack(), addr).add_done_callback(unpack_query)
        return return_future

    def cleanup(self) -> None:
        """Cleanup any loose ends."""
        self.forwarder.cleanup()
