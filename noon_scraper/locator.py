"""Build the URLs a catalog page can be read from.

Nothing here touches the network. A URL that does not have the expected
``/<locale>/<...>/<category>/<listing>/`` shape simply produces fewer
endpoint candidates.
"""
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

DEFAULT_PAGE_SIZE = 50

LOCALE_SEGMENT = re.compile(r"^[a-z]{2,3}-[a-z]{2}$", re.I)

# Query parameters the locator controls itself.
PAGING_PARAMS = ("page", "limit")


@dataclass(frozen=True)
class CatalogRef:
    scheme: str
    host: str
    locale: Optional[str]
    category: Optional[str]
    query: Tuple[Tuple[str, str], ...]

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.host}"

    @property
    def api_host(self) -> str:
        host = self.host[4:] if self.host.startswith("www.") else self.host
        return f"api.{host}"


@dataclass(frozen=True)
class CrawlTask:
    target_url: str
    page_number: int = 1
    attempt_count: int = 0


def parse_catalog_url(url: str) -> Optional[CatalogRef]:
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    parts = [p for p in parsed.path.split("/") if p]
    locale = parts[0] if parts and LOCALE_SEGMENT.match(parts[0]) else None
    category = parts[-2] if len(parts) >= 3 and parts[-2].lower() != "p" else None
    query = tuple(
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if key not in PAGING_PARAMS
    )
    return CatalogRef(parsed.scheme, parsed.netloc, locale, category, query)


def _query(*pairs) -> str:
    params = []
    for group in pairs:
        params.extend(group)
    return urlencode(params)


def endpoint_candidates(url: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> List[str]:
    """Backend endpoint URLs for a catalog page, most reliable first."""
    ref = parse_catalog_url(url)
    if ref is None:
        return []
    candidates = []
    paging = (("page", str(page)), ("limit", str(page_size)))
    if ref.locale:
        candidates.append(
            f"{ref.origin}/api/catalog/v1/u/{ref.locale}/products?{_query(ref.query, paging)}"
        )
        candidates.append(
            f"{ref.origin}/{ref.locale}/api/search?{_query(ref.query, paging[:1])}"
        )
    if ref.category:
        candidates.append(
            f"{ref.scheme}://{ref.api_host}/catalog/products?"
            f"{_query((('category', ref.category),), paging)}"
        )
    return candidates


def with_page(url: str, page: int, page_size: Optional[int] = None) -> str:
    """Set ``page`` (and ``limit`` when it is not already present) on ``url``."""
    parsed = urlparse(url)
    params = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != "page"]
    params.append(("page", str(page)))
    if page_size is not None and not any(k == "limit" for k, _ in params):
        params.append(("limit", str(page_size)))
    return urlunparse(parsed._replace(query=urlencode(params)))


def catalog_task(url: str, page: int = 1) -> CrawlTask:
    return CrawlTask(target_url=url, page_number=page)


def product_url_for(catalog_url: str, sku: str) -> Optional[str]:
    """Canonical product page URL for a SKU on the catalog's storefront."""
    ref = parse_catalog_url(catalog_url)
    if ref is None or not sku:
        return None
    locale = f"/{ref.locale}" if ref.locale else ""
    return f"{ref.origin}{locale}/p/{sku}"
