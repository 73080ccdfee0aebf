import itertools
import random
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

# Each profile keeps user agent, client hints and language consistent with
# one browser/OS pair so a single identity never mixes fingerprints.
HEADER_PROFILES = [
    {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko)"
                      " Chrome/124.0.0.0 Safari/537.36",
        "sec-ch-ua": '"Chromium";v="124", "Google Chrome";v="124", "Not-A.Brand";v="99"',
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"Windows"',
        "Accept-Language": "en-US,en;q=0.9",
    },
    {
        "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko)"
                      " Chrome/123.0.0.0 Safari/537.36",
        "sec-ch-ua": '"Google Chrome";v="123", "Not:A-Brand";v="8", "Chromium";v="123"',
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"macOS"',
        "Accept-Language": "en-GB,en;q=0.9",
    },
    {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
        "Accept-Language": "en-US,en;q=0.5",
    },
    {
        "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14.4; rv:124.0) Gecko/20100101 Firefox/124.0",
        "Accept-Language": "en-AE,en;q=0.7,en-US;q=0.3",
    },
    {
        "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko)"
                      " Version/17.4 Safari/605.1.15",
        "Accept-Language": "en-US,en;q=0.9",
    },
]

DOCUMENT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Cache-Control": "max-age=0",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Upgrade-Insecure-Requests": "1",
}


@dataclass
class NetworkIdentity:
    key: int
    headers: Dict[str, str]
    proxy: Optional[str] = None
    usage_count: int = 0
    error_score: float = 0.0
    retired: bool = False


@dataclass
class IdentityPool:
    """Rotating header/proxy identities with usage and error budgets.

    The pool fills lazily up to ``max_size``; once full, requests draw a random
    live identity. Identities leave rotation when they are used ``max_usage``
    times, when their error score reaches ``max_error_score`` or when
    ``retire`` is called on a hard block.
    """

    max_size: int = 50
    max_usage: int = 10
    max_error_score: float = 3.0
    proxies: List[str] = field(default_factory=list)
    profiles: List[Dict[str, str]] = field(default_factory=lambda: list(HEADER_PROFILES))
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self):
        self._live: List[NetworkIdentity] = []
        self._keys = itertools.count(1)
        self._proxy_cycle = itertools.cycle(self.proxies) if self.proxies else None
        self._lock = threading.Lock()
        self.created = 0
        self.retired = 0

    @classmethod
    def from_settings(cls, settings):
        return cls(
            max_size=settings.getint("IDENTITY_POOL_SIZE", 50),
            max_usage=settings.getint("IDENTITY_MAX_USAGE", 10),
            max_error_score=settings.getfloat("IDENTITY_MAX_ERROR_SCORE", 3.0),
            proxies=settings.getlist("PROXY_URLS"),
        )

    def __len__(self):
        return len(self._live)

    def _create(self) -> NetworkIdentity:
        identity = NetworkIdentity(
            key=next(self._keys),
            headers=dict(self.rng.choice(self.profiles)),
            proxy=next(self._proxy_cycle) if self._proxy_cycle else None,
        )
        self._live.append(identity)
        self.created += 1
        return identity

    def _retire(self, identity: NetworkIdentity):
        if identity.retired:
            return
        identity.retired = True
        self.retired += 1
        if identity in self._live:
            self._live.remove(identity)

    def acquire(self) -> NetworkIdentity:
        with self._lock:
            if len(self._live) < self.max_size:
                identity = self._create()
            else:
                identity = self.rng.choice(self._live)
            identity.usage_count += 1
            if identity.usage_count >= self.max_usage:
                # still serves this request, but is no longer handed out
                self._retire(identity)
            return identity

    def retire(self, identity: NetworkIdentity):
        with self._lock:
            self._retire(identity)

    def mark_good(self, identity: NetworkIdentity):
        with self._lock:
            identity.error_score = max(0.0, identity.error_score - 0.5)

    def mark_bad(self, identity: NetworkIdentity):
        with self._lock:
            identity.error_score += 1
            if identity.error_score >= self.max_error_score:
                self._retire(identity)
