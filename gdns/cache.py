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
import time
from typing import Callable, Sequence

from .protocol import DNSQuestion

# Cached answers are kept for 24 hours
DEFAULT_RETENTION = 24 * 60 * 60

QuestionKey = tuple[int, int, str]


@dataclasses.dataclass(frozen=True)
class CachedAnswer:
    """One answer observed for a question.

    Attributes:
        question: The (class, type, name) key of the question.
        answer: A resource record in uncompressed wire form. The cache never
            looks inside it.
        created_at: When the answer was stored (UNIX time).
    """

    question: QuestionKey
    answer: bytes
    created_at: float


class AnswerCache:
    """
    A cache of answers, keyed by question.

    Every answer expires `retention` seconds after it was stored, no matter
    what TTL the record itself carries. Answers for the same question
    accumulate; nothing is merged or deduplicated.
    """

    def __init__(
        self,
        storage,
        retention: float = DEFAULT_RETENTION,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Create an AnswerCache instance.

        Args:
            storage: The store holding the answers (see gdns.storage).
            retention: Seconds an answer stays visible. Defaults to 24 hours.
            clock: Source of the current time. Defaults to time.time.
        """
        self.storage = storage
        self.retention = retention
        self.clock = clock

    def _cutoff(self) -> float:
        # Answers stored at or before the cutoff have expired
        return self.clock() - self.retention

    def lookup(self, question: DNSQuestion) -> list[bytes]:
        """
        Get every unexpired answer for a question.

        Args:
            question: The question.

        Returns:
            The answers, oldest first. Empty on a miss.
        """
        return self.storage.find_answers(question.key, self._cutoff())

    def store(self, question: DNSQuestion, answers: Sequence[bytes]) -> None:
        """
        Add answers for a question, timestamped now.

        Args:
            question: The question the answers belong to.
            answers: The answers. Must not be empty.

        Raises:
            ValueError: No answers were given.
        """
        if not answers:
            raise ValueError("Refusing to cache an empty answer list")
        self.storage.insert_answers(question.key, list(answers), self.clock())

    def purge(self) -> int:
        """
        Delete expired answers from the store.

        Returns:
            How many answers were deleted.
        """
        count = self.storage.delete_answers(self._cutoff())
        if count:
            logging.debug("Purged %d expired answers", count)
        return count
