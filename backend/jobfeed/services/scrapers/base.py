from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Literal, Optional

from jobfeed.schemas import SourceScrapeStats

LocationScope = Literal["meghalaya_only", "all_locations"]


@dataclass(frozen=True)
class SourceSelectors:
    """CSS selectors describing one source's listing markup"""

    job_container: str
    title: str
    location: str
    company: str
    link: str
    description: str
    published_at: Optional[str] = None


@dataclass
class SourceConfig:
    name: str
    url: str
    selectors: SourceSelectors
    location_scope: LocationScope = "all_locations"


@dataclass
class RawListing:
    """A listing as extracted from a page, before filtering and normalization"""

    title: str
    company: str
    location: str
    description: str
    source_url: str
    pdf_source_url: Optional[str] = None
    published_text: str = ""
    context_text: str = ""


@dataclass
class SourceScrapeResult:
    listings: List[RawListing] = field(default_factory=list)
    stats: Optional[SourceScrapeStats] = None


class ScrapeError(Exception):
    """A source could not be fetched or parsed at all."""


class BaseScraper(ABC):
    """Base class for job scrapers"""

    source: str = "unknown"

    @abstractmethod
    async def scrape(self, source: SourceConfig) -> SourceScrapeResult:
        """Fetch and extract listings from one source; raise ``ScrapeError`` on failure"""
        pass
