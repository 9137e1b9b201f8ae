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

from .directory import UpstreamDirectory, UpstreamServer
from .geo import BaseLocator


class GeoSelector:
    """Pick the upstream server for a client by where the client is."""

    def __init__(self, locator: BaseLocator, directory: UpstreamDirectory) -> None:
        self.locator = locator
        self.directory = directory

    def select(self, client_address: str) -> UpstreamServer:
        """Select the upstream closest to a client.

        Clients the locator can't place get the highest priority upstream.

        Args:
            client_address: IP address of the client.

        Raises:
            NoUpstreamError: The directory is empty.

        Returns:
            The selected upstream server.
        """
        coordinate = self.locator.lookup(client_address)
        server = self.directory.require_nearest(coordinate)

        if coordinate is None:
            logging.debug(
                "Unable to locate %s, using %s (rank %d)",
                client_address,
                server.address,
                server.rank,
            )
        else:
            logging.debug(
                "Located %s at %s, using %s", client_address, coordinate, server.address
            )
        return server
