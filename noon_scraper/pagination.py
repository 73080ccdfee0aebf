"""Crawl budget and the next-page decision.

``decide`` is a pure function of one page's outcome and a budget snapshot.
The spider only schedules what it returns after ``CrawlBudget.claim_page``
agrees, so concurrent pages can never overshoot the configured ceilings.
"""
import enum
import threading
import time
from typing import NamedTuple, Optional
from urllib.parse import urlparse, urlunparse

from noon_scraper.extractors import PRODUCT_URL_PATTERN, Tier
from noon_scraper.locator import DEFAULT_PAGE_SIZE, CrawlTask, with_page


class Phase(enum.Enum):
    FETCHING = "fetching"
    EXTRACTED = "extracted"
    DECIDING = "deciding"
    DONE = "done"


class BudgetSnapshot(NamedTuple):
    saved_count: int
    page_count: int
    max_products: int
    max_pages: int
    stopped: bool = False

    @property
    def exhausted(self) -> bool:
        if self.stopped or self.page_count >= self.max_pages:
            return True
        return bool(self.max_products) and self.saved_count >= self.max_products


class CrawlBudget:
    """Run-wide counters; every mutation is a single locked check-and-increment.

    ``max_products == 0`` means unlimited. ``detail_fetch_cap`` of ``None``
    means unlimited detail fetches.
    """

    def __init__(self, max_products=100, max_pages=10, detail_fetch_cap=None, timeout=0):
        self.max_products = max_products
        self.max_pages = max_pages
        self.detail_fetch_cap = detail_fetch_cap
        self.saved_count = 0
        self.page_count = 0
        self.detail_fetches = 0
        self.truncated_count = 0
        self._claimed_pages = 0
        self._reserved_products = 0
        self._stopped = False
        self._deadline = time.monotonic() + timeout if timeout else None
        self._lock = threading.Lock()

    @property
    def stopped(self) -> bool:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._stopped = True
        return self._stopped

    def request_stop(self):
        with self._lock:
            self._stopped = True

    def claim_page(self) -> bool:
        """Reserve one catalog-page fetch; ``False`` once no more may start."""
        with self._lock:
            if self.stopped or self._claimed_pages >= self.max_pages:
                return False
            if self.max_products and self._reserved_products >= self.max_products:
                return False
            self._claimed_pages += 1
            return True

    def reserve_products(self, count: int) -> int:
        """Reserve up to ``count`` product slots and return how many were granted."""
        with self._lock:
            if self.max_products:
                granted = max(0, min(count, self.max_products - self._reserved_products))
            else:
                granted = count
            self._reserved_products += granted
            self.truncated_count += count - granted
            return granted

    def claim_detail_fetch(self) -> bool:
        with self._lock:
            if self.detail_fetch_cap is not None and self.detail_fetches >= self.detail_fetch_cap:
                return False
            self.detail_fetches += 1
            return True

    def commit_page(self, saved: int):
        """Record a processed page and the records it sent to the sink."""
        with self._lock:
            self.saved_count += saved
            self.page_count += 1

    def snapshot(self) -> BudgetSnapshot:
        with self._lock:
            return BudgetSnapshot(
                self.saved_count, self.page_count, self.max_products, self.max_pages, self.stopped
            )


class PageOutcome(NamedTuple):
    task: CrawlTask
    tier: Optional[Tier]
    record_count: int
    has_more: Optional[bool] = None
    next_link: Optional[str] = None


class Decision(NamedTuple):
    phase: Phase
    next_task: Optional[CrawlTask] = None
    reason: str = ""


def listing_url(url: str) -> str:
    """Trim a product-page path (``/.../p/...``) back to its listing part."""
    parsed = urlparse(url)
    if not PRODUCT_URL_PATTERN.search(parsed.path):
        return url
    parts = [p for p in parsed.path.split("/") if p]
    lowered = [p.lower() for p in parts]
    index = lowered.index("p") if "p" in lowered else len(parts)
    path = "/" + "/".join(parts[:index]) + "/" if index else "/"
    return urlunparse(parsed._replace(path=path))


def synthesize_next_url(url: str, page: int) -> str:
    return with_page(listing_url(url), page, DEFAULT_PAGE_SIZE)


def decide(outcome: PageOutcome, budget: BudgetSnapshot) -> Decision:
    if budget.exhausted:
        return Decision(Phase.DONE, reason="budget exhausted")
    if outcome.record_count == 0:
        return Decision(Phase.DONE, reason="no products on page")
    next_page = outcome.task.page_number + 1
    if outcome.tier is Tier.ENDPOINT:
        if outcome.has_more:
            url = with_page(outcome.task.target_url, next_page)
            return Decision(Phase.FETCHING, CrawlTask(url, next_page), "endpoint reports more pages")
        return Decision(Phase.DONE, reason="endpoint reports no more pages")
    if outcome.next_link:
        return Decision(Phase.FETCHING, CrawlTask(outcome.next_link, next_page), "next link")
    url = synthesize_next_url(outcome.task.target_url, next_page)
    return Decision(Phase.FETCHING, CrawlTask(url, next_page), "synthesized page parameter")
