"""Fill missing descriptive fields from a product's own page.

Each field is resolved through the same chain and the first source that
yields a value wins:

1. JSON-LD ``Product`` metadata,
2. known keys inside other embedded script payloads,
3. selectors for the description, brand and rating blocks,
4. patterns over the page's visible text.

Values already present on the record are never replaced.
"""
import json
import re
from html import escape
from typing import Any, Dict, Iterable, List, Optional

from scrapy.http import TextResponse

from noon_scraper.errors import EnrichmentFailure
from noon_scraper.extractors import is_block_page, merge_fields, visible_text
from noon_scraper.normalize import (
    DETAIL_RATING_PATTERNS,
    DETAIL_REVIEW_PATTERNS,
    clean_rating,
    clean_reviews_count,
    clean_text,
    match_first,
)

ENRICHED_FIELDS = ("description", "brand", "rating", "reviewsCount")

SCRIPT_RATING_KEYS = ("ratingValue", "average_rating", "avg_rating", "rating_value")
SCRIPT_REVIEW_KEYS = ("reviewCount", "ratingCount", "reviews_count", "rating_count", "review_count")
SCRIPT_DESCRIPTION_KEYS = ("long_description", "longDescription", "description")
SCRIPT_BULLET_KEYS = ("feature_bullets", "featureBullets", "highlights")
SCRIPT_SPEC_KEYS = ("specifications", "specs")

DESCRIPTION_SELECTORS = (
    "div.OverviewTab-module-scss-module__NTeOuq__container",
    '[class*="OverviewTab"][class*="container"]',
    "#OverviewArea",
    '[data-qa*="overview"]',
)
META_DESCRIPTION_SELECTORS = (
    'meta[name="description"]::attr(content)',
    'meta[property="og:description"]::attr(content)',
)
BRAND_SELECTORS = (
    'div.BrandStoreCtaV2-module-scss-module___vJ0Tq__brandAndVariantsButton [class*="textContent"]',
    '[class*="BrandStoreCtaV2"] [class*="textContent"]',
    "a.BrandStoreCtaV2-module-scss-module___vJ0Tq__brandStoreLink",
    'a[href*="/brand/"]',
    '[data-qa*="brand"]',
)
RATING_SELECTORS = (
    "div.RatingPreviewStarV2-module-scss-module__0_8vQW__starsCtr span.RatingPreviewStarV2-module-scss-module__0_8vQW__text",
    '[class*="RatingPreviewStar"][class*="starsCtr"] [class*="text"]',
)
REVIEW_SELECTORS = (
    "div.RatingPreviewStarV2-module-scss-module__0_8vQW__ratingsCountCtr",
    '[class*="RatingPreviewStar"][class*="ratingsCount"]',
)
SHORT_RATING = re.compile(r"([1-5](?:\.\d)?)")


def needs_enrichment(record: dict) -> bool:
    return any(record.get(field) is None for field in ENRICHED_FIELDS)


def _is_product_node(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    kind = node.get("@type")
    return kind == "Product" or (isinstance(kind, list) and "Product" in kind)


def _ld_nodes(data: Any) -> Iterable[dict]:
    nodes = data if isinstance(data, list) else [data]
    for node in nodes:
        if not isinstance(node, dict):
            continue
        if isinstance(node.get("@graph"), list):
            yield from _ld_nodes(node["@graph"])
        if _is_product_node(node):
            yield node
        elif _is_product_node(node.get("mainEntity")):
            yield node["mainEntity"]


def from_structured_data(response) -> Dict[str, Any]:
    found: Dict[str, Any] = {}
    for raw in response.css('script[type="application/ld+json"]::text').getall():
        try:
            data = json.loads(raw.strip())
        except ValueError:
            continue
        for node in _ld_nodes(data):
            brand = node.get("brand")
            if isinstance(brand, dict):
                brand = brand.get("name")
            rating = node.get("aggregateRating") or {}
            if not isinstance(rating, dict):
                rating = {}
            found = merge_fields(found, {
                "description": clean_text(node.get("description")),
                "brand": clean_text(brand),
                "rating": clean_rating(rating.get("ratingValue") or rating.get("rating")),
                "reviewsCount": clean_reviews_count(rating.get("reviewCount") or rating.get("ratingCount")),
            })
    return found


def _decode_key(text: str, key: str) -> Any:
    """Decode the JSON value that follows the first ``"key":`` in ``text``."""
    match = re.search(r'"%s"\s*:\s*' % re.escape(key), text)
    if not match:
        return None
    try:
        value, _ = json.JSONDecoder().raw_decode(text, match.end())
    except ValueError:
        return None
    return value


def _scan(scripts: List[str], keys: Iterable[str], normalize) -> Any:
    for key in keys:
        for script in scripts:
            value = normalize(_decode_key(script, key))
            if value is not None:
                return value
    return None


def _bullet_block(value: Any) -> Optional[str]:
    if not isinstance(value, list):
        return None
    items = [clean_text(item) for item in value if isinstance(item, str)]
    items = [item for item in items if item]
    if not items:
        return None
    return "<ul>" + "".join(f"<li>{escape(item)}</li>" for item in items) + "</ul>"


def _spec_block(value: Any) -> Optional[str]:
    if not isinstance(value, list):
        return None
    rows = []
    for spec in value:
        if not isinstance(spec, dict):
            continue
        name = clean_text(spec.get("name") or spec.get("code") or spec.get("key"))
        detail = clean_text(spec.get("value"))
        if name and detail:
            rows.append(f"<li><strong>{escape(name)}</strong>: {escape(detail)}</li>")
    return "<ul>" + "".join(rows) + "</ul>" if rows else None


def from_script_payloads(response) -> Dict[str, Any]:
    scripts = [
        text for text in response.xpath(
            '//script[not(@src)][not(@type="application/ld+json")]/text()'
        ).getall()
        if "{" in text
    ]
    if not scripts:
        return {}
    parts = [
        _scan(scripts, SCRIPT_DESCRIPTION_KEYS, clean_text),
        _scan(scripts, SCRIPT_BULLET_KEYS, _bullet_block),
        _scan(scripts, SCRIPT_SPEC_KEYS, _spec_block),
    ]
    parts = [part for part in parts if part]
    return {
        "description": " ".join(parts) or None,
        "rating": _scan(scripts, SCRIPT_RATING_KEYS, clean_rating),
        "reviewsCount": _scan(scripts, SCRIPT_REVIEW_KEYS, clean_reviews_count),
    }


def _selected_text(response, selectors) -> Optional[str]:
    for selector in selectors:
        match = response.css(selector)
        if match:
            text = clean_text(" ".join(match[0].xpath(".//text()").getall()))
            if text:
                return text
    return None


def from_selectors(response) -> Dict[str, Any]:
    description = _selected_text(response, DESCRIPTION_SELECTORS)
    if not description:
        for selector in META_DESCRIPTION_SELECTORS:
            description = clean_text(response.css(selector).get())
            if description:
                break

    rating = None
    rating_text = _selected_text(response, RATING_SELECTORS)
    if rating_text:
        match = SHORT_RATING.search(rating_text)
        rating = clean_rating(match.group(1)) if match else None

    reviews = None
    reviews_text = _selected_text(response, REVIEW_SELECTORS)
    # that block reads "Brand Rating" on pages without product reviews
    if reviews_text and "Brand Rating" not in reviews_text:
        reviews = clean_reviews_count(reviews_text)

    return {
        "description": description,
        "brand": _selected_text(response, BRAND_SELECTORS),
        "rating": rating,
        "reviewsCount": reviews,
    }


def from_page_text(response) -> Dict[str, Any]:
    text = visible_text(response)
    return {
        "rating": match_first(text, DETAIL_RATING_PATTERNS),
        "reviewsCount": match_first(text, DETAIL_REVIEW_PATTERNS),
    }


RESOLVERS = (from_structured_data, from_script_payloads, from_selectors, from_page_text)


def resolve_details(response, wanted: Iterable[str] = ENRICHED_FIELDS) -> Dict[str, Any]:
    """Resolve ``wanted`` fields from a product page, stopping once all are found."""
    wanted = tuple(wanted)
    resolved: Dict[str, Any] = {}
    for resolver in RESOLVERS:
        if all(resolved.get(field) is not None for field in wanted):
            break
        found = resolver(response)
        resolved = merge_fields(resolved, {field: found.get(field) for field in wanted})
    return {field: resolved.get(field) for field in wanted}


def enrich(record: dict, response) -> dict:
    """Return ``record`` with its missing fields filled from ``response``.

    Raises ``EnrichmentFailure`` when the page cannot be used; callers keep
    the record as it was.
    """
    missing = [field for field in ENRICHED_FIELDS if record.get(field) is None]
    if not missing:
        return record
    if not isinstance(response, TextResponse):
        raise EnrichmentFailure("detail page is not text", url=response.url)
    if is_block_page(response):
        raise EnrichmentFailure("detail page is a block page", url=response.url, status=response.status)
    details = resolve_details(response, missing)
    return merge_fields(record, details)
