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
import signal
import socket
import threading

from .cache import AnswerCache
from .config import ConfigError
from .daemon import CachePurgeDaemon
from .directory import NoUpstreamError, UpstreamDirectory, UpstreamServer
from .forwarder import UdpForwarder
from .geo import BaseLocator, make_locator
from .response import ResponseHandler
from .selector import GeoSelector
from .storage import BaseStore, make_store

MAX_WORKERS = 50

# Largest query accepted from a client
UDP_PKT_SIZE = 4096


def build_upstream_servers(
    entries: list[dict], locator: BaseLocator
) -> list[UpstreamServer]:
    """Turn configured upstream entries into servers, in configuration order.

    Entries without a location are placed with the locator.

    Raises:
        ConfigError: An entry has no location and the locator can't place it.
    """
    servers = []
    seen = set()
    for entry in entries:
        location = entry["location"]
        if location is None:
            location = locator.lookup(entry["address"])
            if location is None:
                raise ConfigError(
                    f"Unable to locate upstream {entry['address']}, give it a location"
                )

        if entry["address"] in seen:
            logging.warning(
                "Upstream %s is listed more than once, the last entry wins",
                entry["address"],
            )
        seen.add(entry["address"])

        servers.append(
            UpstreamServer(
                address=entry["address"], port=entry["port"], location=location
            )
        )
    return servers


class ServerManager:
    """A class to store a server session."""

    def __init__(
        self,
        host: tuple[str, int],
        selector: GeoSelector,
        cache: AnswerCache,
        forwarder: UdpForwarder,
        storage: BaseStore | None = None,
        purge_daemon: CachePurgeDaemon | None = None,
        max_workers: int = MAX_WORKERS,
    ) -> None:
        """Create a ServerManager instance.

        Args:
            host: Host and port to listen on.
            selector: Picks an upstream per client.
            cache: The answer cache.
            forwarder: Forwards questions upstream.
            storage: Store to close on shutdown. Defaults to None.
            purge_daemon: Started with the server, stopped on shutdown.
                Defaults to None.
            max_workers: Datagrams handled at once. Defaults to MAX_WORKERS.
        """
        self.shutdown_event = threading.Event()
        # Set once the socket is bound
        self.ready = threading.Event()

        self.host = host
        family = socket.AF_INET6 if ":" in host[0] else socket.AF_INET
        self.udp_sock = socket.socket(family, socket.SOCK_DGRAM)
        self._bound = False

        self.selector = selector
        self.cache = cache
        self.forwarder = forwarder
        self.storage = storage
        self.purge_daemon = purge_daemon

        self.max_workers = max_workers

    def _sigterm_handler(self, signum, frame) -> None:
        """Handler for SIGTERM event."""
        logging.info("Recieved SIGTERM")
        self.shutdown_event.set()

    @classmethod
    def from_config(cls, kwargs):
        """Create an instance of ServerManager from a configuration.

        The store is prepared and the configured upstreams are upserted into
        the directory before anything is bound.

        Raises:
            StoreError: The store can't be prepared.
            ConfigError: The configuration is invalid.
            NoUpstreamError: There are no upstream servers.

        Returns:
            An instance of ServerManager
        """
        storage = make_store(kwargs)
        storage.prepare()
        logging.debug("Store: %s", storage)

        locator = make_locator(kwargs)

        directory = UpstreamDirectory(storage)
        directory.load(
            build_upstream_servers(kwargs["upstream.servers"] or [], locator)
        )
        if len(directory) == 0:
            raise NoUpstreamError(
                "No upstream servers are configured (upstream.servers)"
            )
        for server in directory.servers():
            logging.info(
                "Upstream %s:%s at %s, rank %d",
                server.address,
                server.port,
                server.location,
                server.rank,
            )

        cache = AnswerCache(storage, retention=kwargs["cache.retention"])

        return cls(
            host=(kwargs["servers.host.host"], kwargs["servers.host.port"]),
            selector=GeoSelector(locator, directory),
            cache=cache,
            forwarder=UdpForwarder(timeout=kwargs["upstream.timeout"]),
            storage=storage,
            purge_daemon=CachePurgeDaemon(cache, kwargs["cache.purge_interval"]),
            max_workers=kwargs["all.max_workers"],
        )

    def bind(self) -> tuple[str, int]:
        """Bind the UDP socket.

        Returns:
            The bound address, useful when the port is 0.
        """
        if not self._bound:
            self.udp_sock.bind(self.host)
            self._bound = True
            addr = self.udp_sock.getsockname()
            logging.info("DNS Server running at %s:%s via UDP", addr[0], addr[1])
        return self.udp_sock.getsockname()[:2]

    def cleanup(self) -> None:
        """Close the socket and everything the server owns."""
        self.udp_sock.close()

        if self.purge_daemon is not None:
            self.purge_daemon.stop()
        self.forwarder.cleanup()
        self.selector.locator.close()
        if self.storage is not None:
            self.storage.close()

        logging.info("Cleanup: Sockets closed")

    def shutdown(self) -> None:
        """Ask the server loop to stop."""
        self.shutdown_event.set()

    def start(self) -> None:
        """Start the server. Blocks until shutdown."""
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, self._sigterm_handler)

        try:
            self.bind()
        except OSError:
            self.cleanup()
            raise
        self.ready.set()

        if self.purge_daemon is not None:
            self.purge_daemon.start()

        sel = selectors.DefaultSelector()
        sel.register(self.udp_sock, selectors.EVENT_READ)

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers
        ) as executor:
            try:
                # Keep running until shutdown
                while not self.shutdown_event.is_set():
                    try:
                        self._single_event(sel, executor)
                    except KeyboardInterrupt:
                        raise
                    except OSError:
                        # One bad datagram shouldn't stop the server
                        logging.error("Error receiving datagram", exc_info=True)
            except KeyboardInterrupt:
                logging.info("Recieved KeyboardInterrupt")
            finally:
                sel.close()

        self.cleanup()
        logging.info("Server shutdown complete")

    def _single_event(self, sel, executor: concurrent.futures.Executor) -> None:
        """Handle a single event."""
        # After the timeout the loop condition is checked again
        events = sel.select(timeout=0.5)
        for key, mask in events:
            if key.fileobj is self.udp_sock:
                query, addr = self.udp_sock.recvfrom(UDP_PKT_SIZE)

                future = executor.submit(self._handle_dns_query_udp, addr, query)
                future.add_done_callback(self._handle_thread_pool_completion)

    def _handle_dns_query_udp(self, addr: tuple[str, int], query: bytes) -> None:
        """Handle a DNS query over UDP.

        Args:
            addr: Address of client.
            query: Incoming DNS query.
        """
        ResponseHandler(
            selector=self.selector,
            cache=self.cache,
            forwarder=self.forwarder,
            udp_sock=self.udp_sock,
            udp_addr=addr,
        ).start(query)

    def _handle_thread_pool_completion(self, future: concurrent.futures.Future) -> None:
        """Log whatever a handler raised.

        Args:
            future: The future from ThreadPoolExecutor.submit()
        """
        try:
            future.result()
        except Exception:
            logging.error("Error handling query", exc_info=True)
