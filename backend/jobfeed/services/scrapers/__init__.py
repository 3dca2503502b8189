from jobfeed.services.scrapers.base import (
    BaseScraper,
    RawListing,
    ScrapeError,
    SourceConfig,
    SourceScrapeResult,
    SourceSelectors,
)
from jobfeed.services.scrapers.html import HtmlScraper

__all__ = [
    "BaseScraper",
    "HtmlScraper",
    "RawListing",
    "ScrapeError",
    "SourceConfig",
    "SourceScrapeResult",
    "SourceSelectors",
]
