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
import threading

from .cache import AnswerCache


class CachePurgeDaemon(threading.Thread):
    """Delete expired answers from the cache every `interval` seconds.

    Lookups never return expired answers on their own, so this only reclaims
    space.
    """

    def __init__(self, cache: AnswerCache, interval: float, *args, **kwargs) -> None:
        kwargs.setdefault("daemon", True)
        kwargs.setdefault("name", "cache-purge")
        super().__init__(*args, **kwargs)

        self.cache = cache
        self.interval = interval
        self.stop_event = threading.Event()

    def run(self) -> None:
        # wait() returns True once stop() is called
        while not self.stop_event.wait(self.interval):
            try:
                self.cache.purge()
            except Exception:
                logging.error("Unable to purge the cache", exc_info=True)

    def stop(self) -> None:
        self.stop_event.set()
