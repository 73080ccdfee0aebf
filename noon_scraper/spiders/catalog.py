import os
from dataclasses import dataclass, field, replace
from typing import List, Optional

import scrapy
from scrapy.http import TextResponse

from noon_scraper.enrichment import enrich, needs_enrichment
from noon_scraper.errors import (
    BlockedError,
    EnrichmentFailure,
    ErrorRecord,
    FatalConfigError,
    MalformedResponseError,
    ValidationError,
    classify_failure,
)
from noon_scraper.extractors import (
    PaginationHint,
    Tier,
    extract_embedded_products,
    extract_markup_products,
    is_block_page,
    next_page_link,
    parse_endpoint_payload,
    reconcile,
    record_from_entry,
)
from noon_scraper.items import ProductItem, validate_product
from noon_scraper.locator import CrawlTask, catalog_task, endpoint_candidates, parse_catalog_url
from noon_scraper.normalize import normalize_record
from noon_scraper.pagination import CrawlBudget, PageOutcome, Phase, decide


def _split_urls(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(',')
    return [str(u).strip() for u in value if str(u).strip()]


def _as_bool(value, default):
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_int(value, name):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise FatalConfigError(f"{name} must be an integer, got {value!r}")


@dataclass
class CatalogPage:
    """One catalog page while its sources are tried and its records enriched."""
    task: CrawlTask
    status: int = 200
    blocked: bool = False
    embedded: List[dict] = field(default_factory=list)
    markup: List[dict] = field(default_factory=list)
    next_link: Optional[str] = None
    candidates: List[str] = field(default_factory=list)
    tier: Optional[Tier] = None
    has_more: Optional[bool] = None
    records: List[dict] = field(default_factory=list)
    pending: List[int] = field(default_factory=list)   # records awaiting a detail fetch


class CatalogSpider(scrapy.Spider):
    name = "catalog"

    def __init__(self, start_urls=None, url=None, max_products=None, max_pages=None,
                 fetch_details=None, detail_fetch_cap=None, currency=None, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.catalog_urls = _split_urls(start_urls) + _split_urls(url)
        self._options = {
            'MAX_PRODUCTS': max_products,
            'MAX_PAGES': max_pages,
            'FETCH_DETAILS': fetch_details,
            'DETAIL_FETCH_CAP': detail_fetch_cap,
            'DEFAULT_CURRENCY': currency,
        }
        self.errors: List[ErrorRecord] = []

    @classmethod
    def from_crawler(cls, crawler, *args, **kwargs):
        spider = super().from_crawler(crawler, *args, **kwargs)
        spider.configure(crawler.settings)
        return spider

    def _option(self, name, settings, default=None):
        # spider argument, then environment, then settings
        value = self._options.get(name)
        if value is None:
            value = os.environ.get(name) or None
        if value is None:
            value = settings.get(name)
        return default if value is None else value

    def configure(self, settings):
        urls = self.catalog_urls or _split_urls(os.environ.get('START_URLS')) or settings.getlist('START_URLS')
        self.catalog_urls = [u for u in urls if parse_catalog_url(u)]
        for u in urls:
            if u not in self.catalog_urls:
                self.logger.warning(f"Ignoring unusable catalog URL: {u}")
        if not self.catalog_urls:
            raise FatalConfigError("Provide start_urls=<comma,separated,list> or set START_URLS env/setting")

        max_products = max(0, _as_int(self._option('MAX_PRODUCTS', settings, 100), 'max_products'))
        max_pages = max(1, _as_int(self._option('MAX_PAGES', settings, 10), 'max_pages'))
        cap = self._option('DETAIL_FETCH_CAP', settings)
        if cap is None:
            cap = max_products or None
        else:
            cap = max(0, _as_int(cap, 'detail_fetch_cap'))
            if max_products:
                cap = min(cap, max_products)

        self.fetch_details = _as_bool(self._option('FETCH_DETAILS', settings), True)
        self.currency = self._option('DEFAULT_CURRENCY', settings) or 'AED'
        self.budget = CrawlBudget(
            max_products=max_products,
            max_pages=max_pages,
            detail_fetch_cap=cap,
            timeout=settings.getint('RUN_TIMEOUT', 0),
        )
        self.logger.info(
            f"Starting scraper: maxProducts={max_products or 'unlimited'}, maxPages={max_pages}, "
            f"fetchDetails={self.fetch_details}, detailFetchCap={cap if cap is not None else 'unlimited'}"
        )

    # --- catalog pages ---------------------------------------------------

    def start_requests(self):
        for url in self.catalog_urls:
            if not self.budget.claim_page():
                self.logger.info(f"Page budget spent, not starting {url}")
                continue
            yield self._catalog_request(catalog_task(url))

    def _catalog_request(self, task):
        return scrapy.Request(
            task.target_url,
            callback=self.parse_catalog,
            errback=self.catalog_failed,
            meta={'task': task},
            dont_filter=True,
        )

    def parse_catalog(self, response):
        task = response.meta['task']
        self.crawler.stats.inc_value('catalog/pages_fetched')
        self.logger.info(
            f"Processing page {task.page_number} "
            f"({self.budget.page_count + 1}/{self.budget.max_pages}): {response.url}"
        )
        page = CatalogPage(
            task=task,
            status=response.status,
            candidates=endpoint_candidates(task.target_url, task.page_number),
        )
        if isinstance(response, TextResponse):
            page.blocked = is_block_page(response)
            if not page.blocked:
                page.embedded = extract_embedded_products(response, self.currency)
                page.markup = extract_markup_products(response, self.currency)
                page.next_link = next_page_link(response, task.page_number)
        if not page.candidates:
            self.logger.debug(f"No endpoint candidates for {task.target_url}")
        yield from self._next_endpoint(page)

    def catalog_failed(self, failure):
        task = failure.request.meta['task']
        task = replace(task, attempt_count=failure.request.meta.get('retry_times', 0) + 1)
        error = classify_failure(failure, url=task.target_url, page=task.page_number)
        self._record(error, task.attempt_count)
        self.budget.commit_page(0)

    # --- endpoint tier ---------------------------------------------------

    def _endpoint_headers(self, task):
        return {
            'Accept': 'application/json, text/plain, */*',
            'Referer': task.target_url,
            'Origin': parse_catalog_url(task.target_url).origin,
            'X-Requested-With': 'XMLHttpRequest',
            'Sec-Fetch-Dest': 'empty',
            'Sec-Fetch-Mode': 'cors',
            'Sec-Fetch-Site': 'same-origin',
        }

    def _next_endpoint(self, page):
        if not page.candidates:
            yield from self._settle(page, [], PaginationHint())
            return
        url = page.candidates.pop(0)
        self.logger.debug(f"[API] Trying endpoint: {url}")
        yield scrapy.Request(
            url,
            callback=self.parse_endpoint,
            errback=self.endpoint_failed,
            headers=self._endpoint_headers(page.task),
            meta={'page': page, 'max_retry_times': 1, 'handle_httpstatus_all': True},
            dont_filter=True,
        )

    def parse_endpoint(self, response):
        page = response.meta['page']
        if response.status >= 400:
            self.logger.debug(f"[API] Endpoint {response.url} returned {response.status}")
            self.crawler.stats.inc_value('catalog/endpoint_misses')
            yield from self._next_endpoint(page)
            return
        try:
            entries, hint = parse_endpoint_payload(response, page.task.page_number)
        except MalformedResponseError as e:
            self.logger.debug(f"[API] {e}: {response.url}")
            self.crawler.stats.inc_value('catalog/endpoint_misses')
            yield from self._next_endpoint(page)
            return
        records = [record_from_entry(entry, page.task.target_url, self.currency) for entry in entries]
        records = [r for r in records if r]
        if not records:
            yield from self._next_endpoint(page)
            return
        self.logger.info(f"[API] Extracted {len(records)} products from {response.url}")
        yield from self._settle(page, records, hint)

    def endpoint_failed(self, failure):
        page = failure.request.meta['page']
        self.logger.debug(f"[API] Endpoint failed: {failure.request.url} - {failure.getErrorMessage()}")
        self.crawler.stats.inc_value('catalog/endpoint_misses')
        yield from self._next_endpoint(page)

    # --- reconciliation, budget, enrichment ------------------------------

    def _settle(self, page, endpoint_records, hint):
        records, tier = reconcile(endpoint_records, page.embedded, page.markup)
        page.tier = tier
        page.has_more = hint.has_more
        if not records:
            if page.blocked:
                self._record(BlockedError(
                    "CAPTCHA/Block detected", url=page.task.target_url,
                    page=page.task.page_number, status=page.status,
                ))
            else:
                self.logger.warning(f"No products found on {page.task.target_url}")
            yield from self._finish_page(page)
            return

        self.crawler.stats.inc_value(f'catalog/pages_from_{tier.value}')
        valid = []
        for record in records:
            try:
                valid.append(validate_product(record))
            except ValidationError as e:
                self.crawler.stats.inc_value('catalog/invalid_records')
                self.logger.debug(f"Dropping record: {e}")
        granted = self.budget.reserve_products(len(valid))
        if granted < len(valid):
            self.crawler.stats.inc_value('budget/truncated_records', len(valid) - granted)
            self.logger.info(f"Keeping {granted} of {len(valid)} products from page {page.task.page_number} (product budget)")
        page.records = valid[:granted]

        if self.fetch_details:
            for index, record in enumerate(page.records):
                if needs_enrichment(record) and self.budget.claim_detail_fetch():
                    page.pending.append(index)
        yield from self._next_detail(page)

    def _next_detail(self, page):
        if not page.pending:
            yield from self._finish_page(page)
            return
        index = page.pending.pop(0)
        yield scrapy.Request(
            page.records[index]['url'],
            callback=self.parse_detail,
            errback=self.detail_failed,
            meta={'page': page, 'record_index': index, 'max_retry_times': 1},
            dont_filter=True,
        )

    def parse_detail(self, response):
        page = response.meta['page']
        index = response.meta['record_index']
        try:
            page.records[index] = normalize_record(enrich(page.records[index], response))
            self.crawler.stats.inc_value('enrichment/succeeded')
        except EnrichmentFailure as e:
            self._record(e)
        yield from self._next_detail(page)

    def detail_failed(self, failure):
        page = failure.request.meta['page']
        cause = classify_failure(failure, url=failure.request.url)
        self._record(EnrichmentFailure(str(cause), url=cause.url, status=cause.status))
        yield from self._next_detail(page)

    # --- commit and paginate ---------------------------------------------

    def _finish_page(self, page):
        for record in page.records:
            yield ProductItem(**record)
        self.budget.commit_page(len(page.records))
        snapshot = self.budget.snapshot()
        if page.records:
            self.logger.info(
                f"Saved {len(page.records)} products "
                f"(Total: {snapshot.saved_count}/{snapshot.max_products or 'unlimited'})"
            )

        outcome = PageOutcome(page.task, page.tier, len(page.records), page.has_more, page.next_link)
        decision = decide(outcome, snapshot)
        if decision.phase is Phase.DONE:
            self.logger.info(
                f"Stopping pagination after page {page.task.page_number}: {decision.reason} "
                f"(saved={snapshot.saved_count}, pages={snapshot.page_count}/{snapshot.max_pages})"
            )
            return
        if not self.budget.claim_page():
            self.logger.info(f"Budget spent, not queueing {decision.next_task.target_url}")
            return
        self.logger.info(f"Queued page {decision.next_task.page_number} ({decision.reason}): {decision.next_task.target_url}")
        yield self._catalog_request(decision.next_task)

    # --- errors and summary ----------------------------------------------

    def _record(self, error, attempts=0):
        self.errors.append(ErrorRecord.from_error(error, attempts))
        self.crawler.stats.inc_value(f'errors/{error.kind}')
        status = f" ({error.status})" if error.status else ""
        if isinstance(error, EnrichmentFailure):
            self.logger.warning(f"Detail fetch failed{status} for {error.url}: {error}")
        else:
            self.logger.error(f"Request failed{status}: {error.url} - {error}")

    def summary(self, reason=None):
        snapshot = self.budget.snapshot()
        return {
            'saved': snapshot.saved_count,
            'requested': snapshot.max_products,
            'pages': snapshot.page_count,
            'max_pages': snapshot.max_pages,
            'errors': len(self.errors),
            'reason': reason,
        }

    def closed(self, reason):
        # a closed run claims no further pages, even from late callbacks
        self.budget.request_stop()
        summary = self.summary(reason)
        for key, value in summary.items():
            self.crawler.stats.set_value(f'summary/{key}', value)
        self.logger.info('=' * 60)
        self.logger.info('SCRAPING SUMMARY')
        self.logger.info(f"Total products saved: {summary['saved']}/{summary['requested'] or 'unlimited'}")
        self.logger.info(f"Total pages processed: {summary['pages']}/{summary['max_pages']}")
        self.logger.info(f"Total errors: {summary['errors']}")
        for error in self.errors[:5]:
            self.logger.warning(f"  - Page {error.page or 'n/a'}: [{error.kind}] {error.message} {error.url or ''}")
        if len(self.errors) > 5:
            self.logger.warning(f"  ... and {len(self.errors) - 5} more errors")
        if summary['saved'] == 0:
            self.logger.error("NO PRODUCTS SAVED! Check errors above.")
        elif summary['requested'] and summary['saved'] < summary['requested'] / 2:
            self.logger.warning(f"Only saved {summary['saved']} products out of {summary['requested']} requested")
        else:
            self.logger.info("Scraping completed successfully!")
        self.logger.info('=' * 60)
