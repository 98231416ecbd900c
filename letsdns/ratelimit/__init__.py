# Copyright 2023 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Sliding window rate limiting of issuance requests per client IP address and per domain."""
import logging
import math
import threading
import time

from .. import errors

# Constants and Variables
log = logging.getLogger(__name__)
KIND_IP = "ip"
KIND_DOMAIN = "domain"


class RateLimiter:
    """
    A thread-safe sliding window counter keyed by `(kind, identifier, endpoint)`. A key that goes over the limit is
    blocked for `block` seconds, even once its window has emptied.
    """

    def __init__(self, requests: int = 10, window: int = 3600, block: int = 3600, enabled: bool = True,
                 clock=time.monotonic) -> None:
        """
        Args:
            requests (int): The number of requests allowed per key within `window`.
            window (int): The sliding window length (in seconds).
            block (int): How long (in seconds) a key stays blocked after going over the limit.
            enabled (bool): Set to False to allow every request.
            clock (callable): The monotonic time source.
        """
        self.requests = requests
        self.window = window
        self.block = block
        self.enabled = enabled
        self._clock = clock
        self._hits = {}
        self._blocked_until = {}
        self._lock = threading.Lock()

    def check(self, kind: str, identifier: str, endpoint: str = "issue") -> None:
        """
        Counts one request for the key.

        Args:
            kind (str): `ip` or `domain`.
            identifier (str): The IP address or domain name.
            endpoint (str): The operation being limited.

        Raises:
            letsdns.errors.RateLimited: When the key is blocked or this request goes over the limit.
        """
        if not self.enabled or not identifier:
            return

        key = (kind, identifier.lower(), endpoint)
        now = self._clock()

        with self._lock:
            blocked_until = self._blocked_until.get(key)
            if blocked_until is not None and blocked_until > now:
                raise self._limited(key, blocked_until - now)
            self._blocked_until.pop(key, None)

            hits = [hit for hit in self._hits.get(key, []) if hit > now - self.window]
            if len(hits) >= self.requests:
                self._hits[key] = hits
                if self.block:
                    self._blocked_until[key] = now + self.block
                    log.warning("Rate limit exceeded for %s %s on %s, blocked for %ss", kind, identifier, endpoint,
                                self.block)
                    raise self._limited(key, self.block)
                raise self._limited(key, min(hits) + self.window - now)

            hits.append(now)
            self._hits[key] = hits

    def reset(self, kind: str = None, identifier: str = None) -> None:
        """Forgets the counters and blocks of every key matching `kind` and `identifier` (all keys by default)."""
        with self._lock:
            for store in (self._hits, self._blocked_until):
                for key in list(store):
                    if (kind is None or key[0] == kind) and (identifier is None or key[1] == identifier.lower()):
                        del store[key]

    def purge(self) -> None:
        """Drops counters and blocks that no longer affect any request."""
        now = self._clock()
        with self._lock:
            for key in list(self._hits):
                self._hits[key] = [hit for hit in self._hits[key] if hit > now - self.window]
                if not self._hits[key]:
                    del self._hits[key]
            for key in list(self._blocked_until):
                if self._blocked_until[key] <= now:
                    del self._blocked_until[key]

    @staticmethod
    def _limited(key: tuple, retry_after: float) -> errors.RateLimited:
        kind, identifier, endpoint = key
        retry_after = max(1, math.ceil(retry_after))
        msg = f"Too many '{endpoint}' requests for {kind} '{identifier}'. Try again in {retry_after} seconds."
        return errors.RateLimited(msg, domain=identifier if kind == KIND_DOMAIN else None, retry_after=retry_after)
