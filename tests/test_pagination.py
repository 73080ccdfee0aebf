import threading

import pytest

from noon_scraper.extractors import Tier
from noon_scraper.locator import CrawlTask
from noon_scraper.pagination import (
    BudgetSnapshot,
    CrawlBudget,
    PageOutcome,
    Phase,
    decide,
    listing_url,
    synthesize_next_url,
)

LISTING = "https://www.noon.com/uae-en/fashion/men-31225/"
ENDPOINT = "https://www.noon.com/api/catalog/v1/u/uae-en/products?page=1&limit=50"


def test_reserve_products_truncates():
    budget = CrawlBudget(max_products=5)
    assert budget.reserve_products(8) == 5
    assert budget.truncated_count == 3
    assert budget.reserve_products(2) == 0
    assert budget.truncated_count == 5


def test_reserve_products_unlimited():
    budget = CrawlBudget(max_products=0)
    assert budget.reserve_products(1000) == 1000
    assert budget.truncated_count == 0


def test_claim_page_stops_at_max_pages():
    budget = CrawlBudget(max_pages=2)
    assert budget.claim_page()
    assert budget.claim_page()
    assert not budget.claim_page()


def test_claim_page_refused_once_products_are_reserved():
    budget = CrawlBudget(max_products=3)
    assert budget.claim_page()
    budget.reserve_products(3)
    assert not budget.claim_page()


def test_request_stop():
    budget = CrawlBudget()
    budget.request_stop()
    assert not budget.claim_page()
    assert budget.snapshot().exhausted


def test_claim_detail_fetch_cap():
    budget = CrawlBudget(detail_fetch_cap=1)
    assert budget.claim_detail_fetch()
    assert not budget.claim_detail_fetch()
    assert budget.detail_fetches == 1
    assert all(CrawlBudget().claim_detail_fetch() for _ in range(50))


def test_concurrent_reservations_never_overshoot():
    budget = CrawlBudget(max_products=100)
    granted = []

    def worker():
        for _ in range(50):
            granted.append(budget.reserve_products(1))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sum(granted) == 100
    assert budget.truncated_count == 300


def test_commit_page_and_snapshot():
    budget = CrawlBudget(max_products=10, max_pages=3)
    budget.commit_page(4)
    budget.commit_page(0)
    assert budget.snapshot() == BudgetSnapshot(4, 2, 10, 3, False)


@pytest.mark.parametrize("snapshot, exhausted", [
    (BudgetSnapshot(5, 1, 5, 10), True),
    (BudgetSnapshot(4, 1, 5, 10), False),
    (BudgetSnapshot(500, 1, 0, 10), False),
    (BudgetSnapshot(0, 10, 0, 10), True),
    (BudgetSnapshot(0, 1, 0, 10, True), True),
])
def test_snapshot_exhausted(snapshot, exhausted):
    assert snapshot.exhausted is exhausted


@pytest.mark.parametrize("url, expected", [
    ("https://www.noon.com/uae-en/shirt/N111A/p/?o=abc", "https://www.noon.com/uae-en/shirt/N111A/?o=abc"),
    ("https://www.noon.com/uae-en/p/N111A", "https://www.noon.com/uae-en/"),
    (LISTING, LISTING),
])
def test_listing_url(url, expected):
    assert listing_url(url) == expected


def test_synthesize_next_url():
    assert synthesize_next_url(LISTING + "?sort=price", 2) == LISTING + "?sort=price&page=2&limit=50"


def _outcome(tier, count=10, has_more=None, next_link=None, url=LISTING, page=1):
    return PageOutcome(CrawlTask(url, page), tier, count, has_more, next_link)


OPEN = BudgetSnapshot(10, 1, 100, 10)


def test_decide_endpoint_has_more():
    decision = decide(_outcome(Tier.ENDPOINT, has_more=True, url=ENDPOINT), OPEN)
    assert decision.phase is Phase.FETCHING
    assert decision.next_task == CrawlTask(
        "https://www.noon.com/api/catalog/v1/u/uae-en/products?limit=50&page=2", 2
    )


@pytest.mark.parametrize("has_more", [False, None])
def test_decide_endpoint_without_more(has_more):
    decision = decide(_outcome(Tier.ENDPOINT, has_more=has_more, url=ENDPOINT), OPEN)
    assert decision.phase is Phase.DONE
    assert decision.next_task is None


def test_decide_follows_next_link():
    decision = decide(_outcome(Tier.MARKUP, next_link=LISTING + "?page=2"), OPEN)
    assert decision.next_task == CrawlTask(LISTING + "?page=2", 2)
    assert decision.reason == "next link"


def test_decide_synthesizes_page_parameter():
    decision = decide(_outcome(Tier.EMBEDDED, url=LISTING + "?page=2", page=2), OPEN)
    assert decision.next_task == CrawlTask(LISTING + "?page=3&limit=50", 3)


def test_decide_stops_on_empty_page():
    assert decide(_outcome(Tier.MARKUP, count=0), OPEN).phase is Phase.DONE


def test_decide_stops_at_max_pages_despite_has_more():
    decision = decide(_outcome(Tier.ENDPOINT, has_more=True, url=ENDPOINT), BudgetSnapshot(10, 10, 0, 10))
    assert decision == (Phase.DONE, None, "budget exhausted")


def test_decide_stops_at_max_products():
    decision = decide(_outcome(Tier.MARKUP, next_link=LISTING + "?page=2"), BudgetSnapshot(5, 1, 5, 10))
    assert decision.phase is Phase.DONE
