import os


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


BOT_NAME = "noon_scraper"

SPIDER_MODULES = ["noon_scraper.spiders"]
NEWSPIDER_MODULE = "noon_scraper.spiders"

# Catalog endpoints are fetched the way the storefront's own pages fetch them
ROBOTSTXT_OBEY = False

# Run input (spider arguments override these; see CatalogSpider)
START_URLS = [u.strip() for u in os.environ.get("START_URLS", "").split(",") if u.strip()]
MAX_PRODUCTS = 100          # 0 = unlimited
MAX_PAGES = 10
FETCH_DETAILS = True
DETAIL_FETCH_CAP = None     # defaults to MAX_PRODUCTS
DEFAULT_CURRENCY = "AED"
RUN_TIMEOUT = _env_int("RUN_TIMEOUT", 0)   # seconds; 0 = no deadline

# Worker pool: concurrency is clamped between a floor and a ceiling
MIN_CONCURRENCY = 2
MAX_CONCURRENCY = 6
CONCURRENT_REQUESTS = max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, _env_int("CONCURRENCY", MAX_CONCURRENCY)))
CONCURRENT_REQUESTS_PER_DOMAIN = CONCURRENT_REQUESTS

# Requests-per-interval ceiling, expressed as the delay between requests
MAX_REQUESTS_PER_MINUTE = max(1, _env_int("MAX_REQUESTS_PER_MINUTE", 60))
DOWNLOAD_DELAY = 60.0 / MAX_REQUESTS_PER_MINUTE
AUTOTHROTTLE_ENABLED = True
AUTOTHROTTLE_START_DELAY = DOWNLOAD_DELAY
AUTOTHROTTLE_MAX_DELAY = 10.0
AUTOTHROTTLE_TARGET_CONCURRENCY = float(MIN_CONCURRENCY)

# Retries and timeouts
RETRY_ENABLED = True
RETRY_TIMES = 5
RETRY_HTTP_CODES = [408, 429, 500, 502, 503, 504, 522, 524]
DOWNLOAD_TIMEOUT = 60

# Identity pool (header profiles + proxies)
IDENTITY_POOL_SIZE = 50
IDENTITY_MAX_USAGE = 10
IDENTITY_MAX_ERROR_SCORE = 3
PROXY_URLS = [u.strip() for u in os.environ.get("PROXY_URLS", "").split(",") if u.strip()]

# Cached responses would replay block pages
HTTPCACHE_ENABLED = False

# Middlewares (identities own the request headers; Scrapy's header defaults are off)
DOWNLOADER_MIDDLEWARES = {
    'noon_scraper.middlewares.IdentityMiddleware': 400,
    'scrapy.downloadermiddlewares.defaultheaders.DefaultHeadersMiddleware': None,
    'scrapy.downloadermiddlewares.retry.RetryMiddleware': 550,
    'scrapy.downloadermiddlewares.useragent.UserAgentMiddleware': None,
}

# Pipelines
ITEM_PIPELINES = {
    'noon_scraper.pipelines.JsonLinesWriterPipeline': 300,
}

# Output file (used by pipeline)
OUTPUT_JSONL = os.environ.get('OUTPUT_JSONL', 'products.jsonl')

# Logging
LOG_LEVEL = 'INFO'

FEED_EXPORT_ENCODING = "utf-8"
