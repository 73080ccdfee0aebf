import logging

from scrapy import signals
from scrapy.downloadermiddlewares.retry import get_retry_request

from noon_scraper.extractors import is_block_page
from noon_scraper.identities import DOCUMENT_HEADERS, IdentityPool

logger = logging.getLogger(__name__)


class IdentityMiddleware:
    """Present every request under a rotating identity and react to blocks.

    Each request (retries included) draws an identity from the pool for its
    header profile and proxy. A 403 or a challenge page retires the identity
    at once and the request is retried under a new one; once the retry
    budget is spent the response is passed on for the spider to record.
    """

    def __init__(self, pool, stats=None):
        self.pool = pool
        self.stats = stats

    @classmethod
    def from_crawler(cls, crawler):
        middleware = cls(IdentityPool.from_settings(crawler.settings), crawler.stats)
        crawler.signals.connect(middleware.spider_closed, signal=signals.spider_closed)
        return middleware

    def _inc(self, key, spider):
        if self.stats is not None:
            self.stats.inc_value(key, spider=spider)

    def process_request(self, request, spider):
        identity = self.pool.acquire()
        owned = request.meta.get("identity_headers", ())
        headers = dict(identity.headers)
        for name, value in DOCUMENT_HEADERS.items():
            headers.setdefault(name, value)
        applied = []
        for name, value in headers.items():
            # headers set by the spider win, earlier identities' headers do not
            if name in owned or name not in request.headers:
                request.headers[name] = value
                applied.append(name)
        request.meta["identity"] = identity
        request.meta["identity_headers"] = tuple(applied)
        if identity.proxy:
            request.meta["proxy"] = identity.proxy
        self._inc("identity/assigned", spider)

    def process_response(self, request, response, spider):
        identity = request.meta.get("identity")
        if is_block_page(response):
            if identity is not None:
                self.pool.retire(identity)
            self._inc("identity/retired_blocked", spider)
            logger.warning("Blocked (%s) on %s, rotating identity", response.status, request.url)
            retry = get_retry_request(request, spider=spider, reason="blocked")
            if retry is not None:
                return retry
            return response
        if identity is not None:
            if response.status == 429 or response.status >= 500:
                self.pool.mark_bad(identity)
            else:
                self.pool.mark_good(identity)
        return response

    def process_exception(self, request, exception, spider):
        identity = request.meta.get("identity")
        if identity is not None:
            self.pool.mark_bad(identity)

    def spider_closed(self, spider):
        spider.logger.info(
            "Identity pool: %d created, %d retired, %d live",
            self.pool.created, self.pool.retired, len(self.pool),
        )
