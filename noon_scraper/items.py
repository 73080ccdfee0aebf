from datetime import datetime, timezone
from urllib.parse import urlparse

import scrapy

from noon_scraper.errors import ValidationError

TITLE_MIN_LENGTH = 5
TITLE_MAX_LENGTH = 500


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProductItem(scrapy.Item):
    # identity
    title = scrapy.Field()
    url = scrapy.Field()
    sku = scrapy.Field()

    # descriptive
    brand = scrapy.Field()
    description = scrapy.Field()
    image = scrapy.Field()

    # prices
    currentPrice = scrapy.Field()
    originalPrice = scrapy.Field()
    discount = scrapy.Field()
    currency = scrapy.Field()         # catalog currency code, e.g. "AED"

    # reviews
    rating = scrapy.Field()           # 1-5
    reviewsCount = scrapy.Field()

    scrapedAt = scrapy.Field()        # set when the record is created


EMPTY_RECORD = {name: None for name in ProductItem.fields}


def new_record(default_currency, **values) -> dict:
    """Start a record with every output field present and a creation timestamp."""
    record = dict(EMPTY_RECORD)
    record.update(values)
    record["currency"] = record.get("currency") or default_currency
    record["scrapedAt"] = now_iso()
    return record


def validate_product(record: dict) -> dict:
    title = record.get("title")
    url = record.get("url")
    if not title or not url:
        raise ValidationError("missing required fields (title or url)", url=url)
    if not TITLE_MIN_LENGTH <= len(title) <= TITLE_MAX_LENGTH:
        raise ValidationError(f"title length {len(title)} out of range", url=url)
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"url is not absolute: {url}", url=url)
    return record
