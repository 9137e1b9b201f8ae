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
Client geolocation.

A locator maps an IP address to a (longitude, latitude) pair, or to None when
the address can't be placed. A miss is an ordinary outcome, not an error:
private and loopback addresses are never in a geolocation database.
"""

import ipaddress
import logging
from pathlib import Path

import maxminddb

Coordinate = tuple[float, float]


class BaseLocator:
    """Base class for locators."""

    def lookup(self, ip_addr: str) -> Coordinate | None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class StaticLocator(BaseLocator):
    """Locate addresses using a fixed table of networks."""

    def __init__(self, networks: list[tuple[str, Coordinate]]) -> None:
        """
        Create a StaticLocator instance.

        Args:
            networks: A list of (CIDR, (longitude, latitude)). When networks
                overlap, the longest prefix wins.

        Raises:
            ValueError: A network or coordinate is malformed.
        """
        self.networks = sorted(
            (
                (ipaddress.ip_network(network, strict=False), _check_coordinate(location))
                for network, location in networks
            ),
            key=lambda item: item[0].prefixlen,
            reverse=True,
        )

    def lookup(self, ip_addr: str) -> Coordinate | None:
        try:
            ip = ipaddress.ip_address(ip_addr)
        except ValueError:
            return None

        for network, location in self.networks:
            if ip.version == network.version and ip in network:
                return location
        return None


class MaxMindLocator(BaseLocator):
    """Locate addresses using a MaxMind database (GeoLite2-City or similar)."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.reader = maxminddb.open_database(str(self.path))
        logging.info("Opened geolocation database %s", self.path)

    def lookup(self, ip_addr: str) -> Coordinate | None:
        try:
            record = self.reader.get(ip_addr)
        except ValueError:
            # Not an IP address
            return None

        if not isinstance(record, dict):
            return None
        location = record.get("location") or {}
        longitude = location.get("longitude")
        latitude = location.get("latitude")
        if longitude is None or latitude is None:
            return None
        return (float(longitude), float(latitude))

    def close(self) -> None:
        self.reader.close()


class ChainLocator(BaseLocator):
    """Ask several locators in order. The first hit wins."""

    def __init__(self, locators: list[BaseLocator]) -> None:
        self.locators = locators

    def lookup(self, ip_addr: str) -> Coordinate | None:
        for locator in self.locators:
            location = locator.lookup(ip_addr)
            if location is not None:
                return location
        return None

    def close(self) -> None:
        for locator in self.locators:
            locator.close()


def _check_coordinate(location) -> Coordinate:
    longitude, latitude = (float(x) for x in location)
    if not (-180 <= longitude <= 180 and -90 <= latitude <= 90):
        raise ValueError(f"Coordinate out of range: {location}")
    return (longitude, latitude)


def make_locator(kwargs: dict) -> BaseLocator:
    """Build the locator described by a flattened configuration.

    The static table is asked before the database, so it can place addresses
    the database doesn't know about.
    """
    locators: list[BaseLocator] = []

    if kwargs["geo.networks"]:
        locators.append(
            StaticLocator(
                [(item["network"], item["location"]) for item in kwargs["geo.networks"]]
            )
        )
    if kwargs["geo.database"]:
        locators.append(MaxMindLocator(kwargs["geo.database"]))

    if not locators:
        logging.warning(
            "No geolocation configured, every client will use the first upstream"
        )
    return ChainLocator(locators)
