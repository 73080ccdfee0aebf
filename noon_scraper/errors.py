from dataclasses import dataclass
from typing import Optional

from scrapy.spidermiddlewares.httperror import HttpError
from twisted.internet.error import (
    ConnectError,
    ConnectionLost,
    ConnectionRefusedError,
    DNSLookupError,
    TCPTimedOutError,
    TimeoutError,
)
from twisted.web.client import ResponseFailed


class CrawlError(Exception):
    """Base class for errors contained at page or record level."""

    kind = "crawl"

    def __init__(self, message, url=None, page=None, status=None):
        super().__init__(message)
        self.url = url
        self.page = page
        self.status = status


class TransientNetworkError(CrawlError):
    kind = "transient"


class BlockedError(CrawlError):
    kind = "blocked"


class MalformedResponseError(CrawlError):
    kind = "malformed"


class ValidationError(CrawlError):
    kind = "validation"


class EnrichmentFailure(CrawlError):
    kind = "enrichment"


class FatalConfigError(ValueError):
    """Raised before crawling starts when the run cannot be configured."""


@dataclass
class ErrorRecord:
    kind: str
    message: str
    url: Optional[str] = None
    page: Optional[int] = None
    status: Optional[int] = None
    attempts: int = 0

    @classmethod
    def from_error(cls, error: CrawlError, attempts: int = 0) -> "ErrorRecord":
        return cls(
            kind=error.kind,
            message=str(error),
            url=error.url,
            page=error.page,
            status=error.status,
            attempts=attempts,
        )


TRANSIENT_FAILURES = (
    TimeoutError,
    TCPTimedOutError,
    DNSLookupError,
    ConnectError,
    ConnectionRefusedError,
    ConnectionLost,
    ResponseFailed,
)


def classify_failure(failure, url=None, page=None) -> CrawlError:
    """Map a Twisted failure from an errback onto the crawl error taxonomy."""
    if failure.check(HttpError):
        response = failure.value.response
        status = response.status
        if status == 403:
            return BlockedError(f"HTTP {status}", url=url or response.url, page=page, status=status)
        return TransientNetworkError(f"HTTP {status}", url=url or response.url, page=page, status=status)
    if failure.check(*TRANSIENT_FAILURES):
        return TransientNetworkError(
            f"{failure.type.__name__}: {failure.getErrorMessage()}", url=url, page=page
        )
    return CrawlError(f"{failure.type.__name__}: {failure.getErrorMessage()}", url=url, page=page)
