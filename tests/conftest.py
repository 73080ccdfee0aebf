import json

import pytest
from scrapy.http import HtmlResponse, Request, TextResponse
from scrapy.utils.test import get_crawler

from noon_scraper.spiders.catalog import CatalogSpider

CATALOG_URL = "https://www.noon.com/uae-en/fashion/men-31225/crazy-price-drops-ae-FA_03/"


def html_response(url, body, meta=None, status=200):
    request = Request(url, meta=meta or {})
    return HtmlResponse(url=url, body=body.encode("utf-8"), encoding="utf-8", status=status, request=request)


def json_response(url, payload, meta=None, status=200):
    request = Request(url, meta=meta or {})
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return TextResponse(
        url=url,
        body=body.encode("utf-8"),
        encoding="utf-8",
        status=status,
        headers={"Content-Type": "application/json"},
        request=request,
    )


def product_card(sku, title, price="AED 49.00", was=None, extra=""):
    was_html = f'<span class="oldPrice">{was}</span>' if was else ""
    return f"""
    <div data-qa="plp-product-box">
      <a href="/uae-en/{title.lower().replace(' ', '-')}/{sku}/p/?o=abc">
        <div data-qa="productImagePLP_{sku}"><img src="https://f.nooncdn.com/p/{sku}.jpg"></div>
        <div data-qa="plp-product-box-name">{title}</div>
        <div data-qa="plp-product-box-price"><strong>{price}</strong>{was_html}</div>
        {extra}
      </a>
    </div>
    """


def catalog_html(cards, extra_head="", extra_body=""):
    return f"<html><head>{extra_head}</head><body>{''.join(cards)}{extra_body}</body></html>"


@pytest.fixture
def make_spider():
    def factory(settings=None, **kwargs):
        kwargs.setdefault("start_urls", CATALOG_URL)
        crawler = get_crawler(CatalogSpider, settings or {})
        return CatalogSpider.from_crawler(crawler, **kwargs)
    return factory
