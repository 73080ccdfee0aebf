"""Tiered product extraction for catalog pages.

A catalog page can be read from three sources, most reliable first:

* a backend JSON endpoint (see ``locator.endpoint_candidates``),
* the state blob the storefront embeds in the rendered page,
* the visible product cards in the markup.

The product set comes from the most reliable source that has one; the other
sources only fill fields it left empty, matched by SKU.
"""
import enum
import json
import logging
import re
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple
from urllib.parse import urljoin

from scrapy.http import HtmlResponse, TextResponse

from noon_scraper.errors import MalformedResponseError
from noon_scraper.items import new_record
from noon_scraper.locator import product_url_for
from noon_scraper.normalize import (
    LISTING_RATING_PATTERNS,
    LISTING_REVIEW_PATTERNS,
    clean_price,
    clean_rating,
    clean_reviews_count,
    clean_text,
    match_first,
    normalize_record,
)

logger = logging.getLogger(__name__)


class Tier(enum.Enum):
    ENDPOINT = "endpoint"
    EMBEDDED = "embedded"
    MARKUP = "markup"


class ContainerShape(NamedTuple):
    tag: str
    path: Tuple[str, ...]


# Known payload layouts, tried in order. New layouts are added here.
PRODUCT_CONTAINERS = (
    ContainerShape("products", ("products",)),
    ContainerShape("data.products", ("data", "products")),
    ContainerShape("hits", ("hits",)),
    ContainerShape("results", ("results",)),
    ContainerShape("data.results", ("data", "results")),
    ContainerShape("items", ("items",)),
    ContainerShape("array", ()),
)

CONTAINER_KEYS = tuple(dict.fromkeys(shape.path[-1] for shape in PRODUCT_CONTAINERS if shape.path))

HAS_MORE_KEYS = ("has_next", "hasNext", "has_more", "hasMore")
TOTAL_PAGES_KEYS = ("total_pages", "totalPages", "nbPages")
NEXT_KEYS = ("next", "nextPage", "next_page")

SKU_KEYS = ("sku", "product_code", "id")
ENTRY_FIELDS = {
    "title": ("name", "title", "product_name"),
    "url": ("url", "product_url"),
    "image": ("image_url", "image", "thumbnail", "images.0"),
    "brand": ("brand", "brand_name", "brand.name"),
    "description": ("description", "overview", "summary"),
    "currentPrice": ("sale_price", "price", "offer_price"),
    "originalPrice": ("was_price", "list_price", "original_price"),
    "discount": ("discount_percentage", "discount"),
    "rating": ("rating", "average_rating", "rating.average", "rating.value"),
    "reviewsCount": ("reviews_count", "rating_count", "review_count", "rating.count"),
    "currency": ("currency",),
}

EMBEDDED_STATE_ASSIGNMENT = re.compile(r"window\.(?:__INITIAL_STATE__|__PRELOADED_STATE__|__NUXT__)\s*=\s*")
MAX_EMBEDDED_DEPTH = 12

PRODUCT_URL_PATTERN = re.compile(r"/p/", re.I)
SKU_PATTERN = re.compile(r"/([A-Z0-9]+)(?:/p/|/?(?:\?|#|$))", re.I)

# Markup selector strategies. The first container selector matching anything
# wins; per field, the first selector producing a value wins.
CONTAINER_SELECTORS = (
    '[data-qa="plp-product-box"]',
    '[data-qa*="product-box"]',
    '[data-qa*="product"]',
    '[class*="ProductCard"]',
    '[class*="productContainer"]',
    'div[class*="sc-"] a[href*="/p/"]',
    'article[class*="product"]',
)
PRODUCT_LINK_SELECTOR = 'a[href*="/p/"]'
TITLE_SELECTORS = ('[data-qa="plp-product-box-name"]', "h2", '[class*="productTitle"]')
IMAGE_SELECTORS = ('[data-qa^="productImagePLP"] img', 'img[src*="nooncdn"]', "img")
PRICE_CONTAINER_SELECTOR = '[data-qa="plp-product-box-price"]'
CURRENT_PRICE_SELECTORS = ("strong", '[class*="sellingPrice"], [class*="current"]')
ORIGINAL_PRICE_SELECTORS = (
    '[class*="oldPrice"], [class*="wasPrice"], [class*="was"], span[style*="line-through"]',
)
DISCOUNT_SELECTORS = ('[class*="discount"], [data-qa*="discount"], [class*="OFF"]',)
RATING_SELECTORS = ('[class*="RatingPreviewStar"] [class*="text"]', '[data-qa*="rating"]')
REVIEW_SELECTORS = ('[class*="ratingsCount"]', '[data-qa*="review"]')
BRAND_SELECTORS = ('[data-qa*="brand"], a[href*="/brand/"]',)

NEXT_LINK_SELECTORS = (
    'link[rel="next"]::attr(href)',
    'a[rel="next"]::attr(href)',
    'a[aria-label*="next"]::attr(href)',
    'a[aria-label*="Next"]::attr(href)',
    'a[class*="next"]::attr(href)',
    'a[class*="Next"]::attr(href)',
)

BLOCK_MARKERS = (
    "captcha",
    "access denied",
    "are you a robot",
    "request blocked",
    "you have been blocked",
    "pardon our interruption",
)

VISIBLE_TEXT = "text()[not(ancestor::script)][not(ancestor::style)][not(ancestor::noscript)]"


class PaginationHint(NamedTuple):
    has_more: Optional[bool] = None
    total_pages: Optional[int] = None


# --- shared helpers -------------------------------------------------------

def visible_text(selector, root: str = "//body") -> str:
    return clean_text(" ".join(selector.xpath(f"{root}//{VISIBLE_TEXT}").getall())) or ""


def is_block_page(response) -> bool:
    """True for a 403 or a page whose visible text carries a challenge marker."""
    if response.status == 403:
        return True
    if not isinstance(response, HtmlResponse):
        return False
    text = visible_text(response).lower()
    return any(marker in text for marker in BLOCK_MARKERS)


def sku_from_url(url: Optional[str]) -> Optional[str]:
    if not url or not PRODUCT_URL_PATTERN.search(url):
        return None
    match = SKU_PATTERN.search(url)
    return match.group(1) if match else None


def _lookup(entry: Dict[str, Any], path: str) -> Any:
    node: Any = entry
    for part in path.split("."):
        if isinstance(node, dict):
            node = node.get(part)
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            return None
    if isinstance(node, (dict, list)) or node == "":
        return None
    return node


def _first(entry: Dict[str, Any], paths: Iterable[str]) -> Any:
    for path in paths:
        value = _lookup(entry, path)
        if value is not None:
            return value
    return None


def index_by_sku(records: Iterable[dict]) -> Dict[str, dict]:
    index = {}
    for record in records:
        sku = record.get("sku")
        if sku:
            index.setdefault(sku.upper(), record)
    return index


def merge_fields(primary: dict, *fallbacks: dict) -> dict:
    """Fill the empty fields of ``primary`` from ``fallbacks``, in order."""
    merged = dict(primary)
    for layer in fallbacks:
        for field, value in layer.items():
            if merged.get(field) is None and value is not None:
                merged[field] = value
    return merged


# --- endpoint tier ---------------------------------------------------------

def find_container(payload: Any) -> Tuple[Optional[str], List[dict]]:
    for shape in PRODUCT_CONTAINERS:
        node = payload
        for key in shape.path:
            node = node.get(key) if isinstance(node, dict) else None
        if isinstance(node, list):
            entries = [entry for entry in node if isinstance(entry, dict)]
            if entries:
                return shape.tag, entries
    return None, []


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def pagination_hint(payload: Any, page: int) -> PaginationHint:
    if not isinstance(payload, dict):
        return PaginationHint()
    scopes = [payload] + [
        payload[key] for key in ("pagination", "meta") if isinstance(payload.get(key), dict)
    ]
    total = None
    for scope in scopes:
        for key in TOTAL_PAGES_KEYS:
            total = _as_int(scope.get(key))
            if total is not None:
                break
        if total is not None:
            break
    for scope in scopes:
        for key in HAS_MORE_KEYS:
            if scope.get(key) is not None:
                return PaginationHint(_as_bool(scope[key]), total)
    if total is not None:
        return PaginationHint(page < total, total)
    for scope in scopes:
        for key in NEXT_KEYS:
            if scope.get(key):
                return PaginationHint(True, None)
    return PaginationHint(None, None)


def parse_endpoint_payload(response, page: int = 1) -> Tuple[List[dict], PaginationHint]:
    """Product entries and pagination hint from an endpoint response.

    Raises ``MalformedResponseError`` when the body is not JSON or carries no
    known product container.
    """
    if not isinstance(response, TextResponse):
        raise MalformedResponseError("endpoint returned a binary body", url=response.url, page=page)
    try:
        payload = json.loads(response.text)
    except ValueError as e:
        raise MalformedResponseError(f"endpoint body is not JSON: {e}", url=response.url, page=page)
    tag, entries = find_container(payload)
    if not entries:
        raise MalformedResponseError("no product container in payload", url=response.url, page=page)
    logger.debug("Endpoint %s matched container %r with %d entries", response.url, tag, len(entries))
    return entries, pagination_hint(payload, page)


def record_from_entry(entry: Dict[str, Any], catalog_url: str, currency: str) -> Optional[dict]:
    """Map an endpoint or embedded-state entry onto a record; ``None`` if unusable."""
    if not isinstance(entry, dict):
        return None
    values = {field: _first(entry, paths) for field, paths in ENTRY_FIELDS.items()}
    sku = clean_text(_first(entry, SKU_KEYS))
    url = clean_text(values["url"])
    values["url"] = urljoin(catalog_url, url) if url else product_url_for(catalog_url, sku)
    image = clean_text(values["image"])
    values["image"] = urljoin(catalog_url, image) if image else None
    values["sku"] = sku
    record = normalize_record(new_record(currency, **values))
    if not record["title"] and not record["url"]:
        return None
    return record


# --- embedded-data tier ----------------------------------------------------

def find_embedded_state(response) -> Any:
    """The page's top-level state blob, or ``None``."""
    raw = response.css("script#__NEXT_DATA__::text").get()
    if raw:
        try:
            return json.loads(raw)
        except ValueError:
            logger.debug("Unparseable __NEXT_DATA__ on %s", response.url)
    decoder = json.JSONDecoder()
    for script in response.xpath("//script[not(@src)]/text()").getall():
        match = EMBEDDED_STATE_ASSIGNMENT.search(script)
        if not match:
            continue
        try:
            blob, _ = decoder.raw_decode(script, match.end())
        except ValueError:
            continue
        return blob
    return None


def _is_product_list(value: Any) -> bool:
    if not isinstance(value, list) or not value:
        return False
    return any(
        isinstance(entry, dict)
        and any(key in entry for key in SKU_KEYS)
        and any(key in entry for key in ENTRY_FIELDS["title"])
        for entry in value
    )


def find_product_entries(blob: Any, max_depth: int = MAX_EMBEDDED_DEPTH) -> List[dict]:
    """Depth-first search for the first list of product entries in ``blob``."""

    def walk(node, depth):
        if depth > max_depth:
            return None
        if isinstance(node, dict):
            for key in CONTAINER_KEYS:
                if _is_product_list(node.get(key)):
                    return node[key]
            children = node.values()
        elif isinstance(node, list):
            children = node
        else:
            return None
        for child in children:
            found = walk(child, depth + 1)
            if found:
                return found
        return None

    entries = walk(blob, 0) or []
    return [entry for entry in entries if isinstance(entry, dict)]


def extract_embedded_products(response, currency: str) -> List[dict]:
    blob = find_embedded_state(response)
    if blob is None:
        return []
    records = []
    for entry in find_product_entries(blob):
        record = record_from_entry(entry, response.url, currency)
        if record:
            records.append(record)
    return records


# --- markup tier -----------------------------------------------------------

def _node_text(node, separator: str = " ") -> Optional[str]:
    return clean_text(separator.join(node.xpath(f".//{VISIBLE_TEXT}").getall()))


def _select_value(node, selectors, normalize=clean_text, separator: str = " "):
    for selector in selectors:
        match = node.css(selector)
        if not match:
            continue
        value = normalize(_node_text(match[0], separator))
        if value is not None:
            return value
    return None


def _image_from(node, response) -> Optional[str]:
    for selector in IMAGE_SELECTORS:
        for img in node.css(selector)[:1]:
            src = img.attrib.get("src")
            if not src or src.startswith("data:"):
                src = img.attrib.get("data-src")
            if not src and img.attrib.get("srcset"):
                src = img.attrib["srcset"].split()[0]
            if src:
                return response.urljoin(src)
    return None


def _original_price_from(price_node, current_price) -> Optional[float]:
    value = _select_value(price_node, ORIGINAL_PRICE_SELECTORS, clean_price, separator="")
    if value is not None:
        return value
    if current_price is None:
        return None
    for span in price_node.css("span"):
        price = clean_price(_node_text(span, ""))
        if price is not None and price > current_price:
            return price
    return None


def _brand_from_title(title: Optional[str]) -> Optional[str]:
    if not title:
        return None
    words = title.split(" ")
    if len(words) > 1 and len(words[0]) >= 2 and words[0][0].isupper():
        return words[0]
    return None


def _product_from_container(node, response, currency: str) -> Optional[dict]:
    href = node.attrib.get("href") if node.root.tag == "a" else None
    link = node.css(PRODUCT_LINK_SELECTOR)[:1]
    if not href and link:
        href = link[0].attrib.get("href")
    url = response.urljoin(href) if href else None
    if not url:
        return None

    title = _select_value(node, TITLE_SELECTORS)
    if not title and link:
        title = clean_text(link[0].attrib.get("title"))
    if not title:
        return None

    price_node = node.css(PRICE_CONTAINER_SELECTOR)[:1]
    current_price = original_price = None
    if price_node:
        current_price = _select_value(price_node[0], CURRENT_PRICE_SELECTORS, clean_price, separator="")
        if current_price is None:
            current_price = clean_price(_node_text(price_node[0], ""))
        original_price = _original_price_from(price_node[0], current_price)

    full_text = _node_text(node)
    rating = _select_value(node, RATING_SELECTORS, clean_rating)
    if rating is None:
        rating = match_first(full_text, LISTING_RATING_PATTERNS)
    reviews = _select_value(node, REVIEW_SELECTORS, clean_reviews_count)
    if reviews is None:
        reviews = match_first(full_text, LISTING_REVIEW_PATTERNS)

    return normalize_record(new_record(
        currency,
        title=title,
        url=url,
        image=_image_from(node, response),
        brand=_select_value(node, BRAND_SELECTORS) or _brand_from_title(title),
        currentPrice=current_price,
        originalPrice=original_price,
        discount=_select_value(node, DISCOUNT_SELECTORS),
        rating=rating,
        reviewsCount=reviews,
        sku=sku_from_url(url),
    ))


def extract_markup_products(response, currency: str) -> List[dict]:
    for selector in CONTAINER_SELECTORS:
        containers = response.css(selector)
        if containers:
            logger.debug("Found %d product containers on %s using %s", len(containers), response.url, selector)
            break
    else:
        return []
    records = []
    for node in containers:
        record = _product_from_container(node, response, currency)
        if record:
            records.append(record)
    return records


def next_page_link(response, page: int) -> Optional[str]:
    """Explicit link to the next listing page, skipping product-page links."""
    candidates = []
    for selector in NEXT_LINK_SELECTORS:
        candidates.extend(response.css(selector).getall())
    candidates.extend(response.xpath(f'//a[normalize-space(.)="{page + 1}"]/@href').getall())
    for href in candidates:
        href = clean_text(href)
        if href and not PRODUCT_URL_PATTERN.search(href):
            return response.urljoin(href)
    return None


# --- reconciliation --------------------------------------------------------

def _dedupe(records: Iterable[dict]) -> List[dict]:
    seen = set()
    unique = []
    for record in records:
        key = record.get("url") or record.get("sku")
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


def reconcile(endpoint: List[dict], embedded: List[dict], markup: List[dict]) -> Tuple[List[dict], Optional[Tier]]:
    """Pick the product set and fill its gaps from the lower tiers.

    Field precedence is endpoint > embedded > markup; markup values themselves
    prefer targeted selectors over full-text patterns.
    """
    embedded_by_sku = index_by_sku(embedded)
    markup_by_sku = index_by_sku(markup)

    if endpoint:
        tier = Tier.ENDPOINT
        records = []
        for record in endpoint:
            sku = (record.get("sku") or "").upper()
            fallbacks = [index[sku] for index in (embedded_by_sku, markup_by_sku) if sku in index]
            records.append(merge_fields(record, *fallbacks))
    elif embedded or markup:
        tier = Tier.EMBEDDED if embedded else Tier.MARKUP
        records = []
        shown = set()
        for record in markup:
            sku = (record.get("sku") or "").upper()
            if sku in embedded_by_sku:
                shown.add(sku)
                merged = merge_fields(embedded_by_sku[sku], record)
                # the card link is the page's real product URL
                merged["url"] = record.get("url") or merged.get("url")
                records.append(merged)
            else:
                records.append(record)
        records.extend(
            record for record in embedded
            if (record.get("sku") or "").upper() not in shown
        )
    else:
        return [], None

    records = [r for r in records if r.get("title") or r.get("url")]
    return _dedupe(records), tier
