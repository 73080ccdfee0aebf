from urllib.parse import parse_qs, urlparse

from noon_scraper.locator import (
    catalog_task,
    endpoint_candidates,
    parse_catalog_url,
    product_url_for,
    with_page,
)

CATALOG_URL = "https://www.noon.com/uae-en/fashion/men-31225/crazy-price-drops-ae-FA_03/?sort=price&page=3"


def test_parse_catalog_url_extracts_segments():
    ref = parse_catalog_url(CATALOG_URL)
    assert ref.origin == "https://www.noon.com"
    assert ref.locale == "uae-en"
    assert ref.category == "men-31225"
    assert ref.query == (("sort", "price"),)
    assert ref.api_host == "api.noon.com"


def test_parse_catalog_url_rejects_non_http():
    assert parse_catalog_url("ftp://example.com/x") is None
    assert parse_catalog_url("not a url") is None


def test_endpoint_candidates_in_priority_order():
    candidates = endpoint_candidates(CATALOG_URL, page=2)
    assert len(candidates) == 3
    first, second, third = candidates
    assert first.startswith("https://www.noon.com/api/catalog/v1/u/uae-en/products?")
    assert parse_qs(urlparse(first).query) == {"sort": ["price"], "page": ["2"], "limit": ["50"]}
    assert second.startswith("https://www.noon.com/uae-en/api/search?")
    assert parse_qs(urlparse(second).query) == {"sort": ["price"], "page": ["2"]}
    assert third.startswith("https://api.noon.com/catalog/products?")
    assert parse_qs(urlparse(third).query) == {"category": ["men-31225"], "page": ["2"], "limit": ["50"]}


def test_endpoint_candidates_without_locale_or_category():
    # no locale segment and too short for a category
    assert endpoint_candidates("https://shop.example.com/sale/") == []
    only_category = endpoint_candidates("https://shop.example.com/sale/shoes/running/")
    assert only_category == ["https://api.shop.example.com/catalog/products?category=shoes&page=1&limit=50"]


def test_endpoint_candidates_for_unparseable_url():
    assert endpoint_candidates("mailto:someone@example.com") == []


def test_with_page_replaces_page_and_adds_limit_once():
    url = with_page(CATALOG_URL, 4, 50)
    assert parse_qs(urlparse(url).query) == {"sort": ["price"], "page": ["4"], "limit": ["50"]}


def test_with_page_keeps_existing_limit():
    url = with_page("https://www.noon.com/uae-en/sale/?limit=20", 2, 50)
    assert parse_qs(urlparse(url).query) == {"limit": ["20"], "page": ["2"]}


def test_catalog_task_and_product_url():
    task = catalog_task(CATALOG_URL)
    assert task.page_number == 1
    assert task.attempt_count == 0
    assert product_url_for(CATALOG_URL, "N123A") == "https://www.noon.com/uae-en/p/N123A"
    assert product_url_for(CATALOG_URL, None) is None
