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

import dataclasses
import logging
import math

from .geo import Coordinate

# Mean radius of the earth, in kilometres
EARTH_RADIUS = 6371.0088


class NoUpstreamError(Exception):
    """The directory has no upstream servers to choose from."""

    pass


@dataclasses.dataclass(frozen=True)
class UpstreamServer:
    """An upstream DNS server.

    Attributes:
        address: IP address, unique within the directory.
        port: UDP port.
        location: (longitude, latitude) of the server.
        rank: Position in the configuration. Lower ranks are preferred when
            the client can't be located.
    """

    address: str
    port: int = 53
    location: Coordinate = (0.0, 0.0)
    rank: int = 0

    @property
    def addr(self) -> tuple[str, int]:
        return (self.address, self.port)


def great_circle(a: Coordinate, b: Coordinate) -> float:
    """Distance between two (longitude, latitude) points in kilometres, using
    the haversine formula."""
    lon1, lat1 = map(math.radians, a)
    lon2, lat2 = map(math.radians, b)

    h = (
        math.sin((lat2 - lat1) / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2
    )
    return 2 * EARTH_RADIUS * math.asin(min(1.0, math.sqrt(h)))


class UpstreamDirectory:
    """The set of upstream servers, kept in a store."""

    def __init__(self, storage) -> None:
        """
        Create an UpstreamDirectory instance.

        Args:
            storage: The store holding the servers (see gdns.storage).
        """
        self.storage = storage

    def upsert(self, server: UpstreamServer) -> None:
        """Add a server, replacing any server with the same address."""
        self.storage.upsert_server(server)

    def load(self, servers: list[UpstreamServer]) -> None:
        """Upsert configured servers, recording their order as the rank.

        Servers are never deleted. A stored server that is no longer
        configured keeps its old rank and stays selectable, so it is logged.
        """
        configured = {server.address for server in servers}
        for stale in self.storage.all_servers():
            if stale.address not in configured:
                logging.warning(
                    "Upstream %s is stored but no longer configured, keeping rank %d",
                    stale.address,
                    stale.rank,
                )

        for rank, server in enumerate(servers):
            self.upsert(dataclasses.replace(server, rank=rank))
        logging.info("Directory holds %d upstream servers", len(self))

    def servers(self) -> list[UpstreamServer]:
        """All servers, ordered by rank."""
        return sorted(self.storage.all_servers(), key=lambda s: (s.rank, s.address))

    def nearest(self, coordinate: Coordinate | None) -> UpstreamServer | None:
        """Find the server closest to a coordinate.

        Without a coordinate no distance can be computed, so the server with
        the lowest rank is returned instead. Equal distances are also settled
        by rank.

        Args:
            coordinate: (longitude, latitude), or None.

        Returns:
            The chosen server, or None if the directory is empty.
        """
        servers = self.servers()
        if not servers:
            return None
        if coordinate is None:
            return servers[0]
        # min() keeps the first of equal items, and servers is sorted by rank
        return min(servers, key=lambda s: great_circle(coordinate, s.location))

    def require_nearest(self, coordinate: Coordinate | None) -> UpstreamServer:
        """Like nearest, but an empty directory raises NoUpstreamError."""
        server = self.nearest(coordinate)
        if server is None:
            raise NoUpstreamError("No upstream servers are configured")
        return server

    def __len__(self) -> int:
        return len(self.storage.all_servers())
