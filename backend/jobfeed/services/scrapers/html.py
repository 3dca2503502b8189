import logging
from typing import List, Optional
from urllib.parse import urljoin, urlparse, urlunparse

import httpx
from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from jobfeed.config import get_settings
from jobfeed.schemas import SourceScrapeStats
from jobfeed.services.fetch import fetch_text
from jobfeed.services.filters import (
    infer_location,
    looks_like_job_listing,
    mentions_meghalaya,
    normalize_whitespace,
)
from jobfeed.services.scrapers.base import (
    BaseScraper,
    RawListing,
    ScrapeError,
    SourceConfig,
    SourceScrapeResult,
)

logger = logging.getLogger(__name__)

FALLBACK_TITLE = "h1, h2, h3, [class*='title'], a[href*='job'], a[href*='career']"
FALLBACK_COMPANY = "[class*='company'], .company, [class*='employer']"
FALLBACK_LOCATION = "[class*='location'], .location, [class*='city'], [class*='place']"
FALLBACK_DESCRIPTION = "[class*='description'], .description, [class*='summary'], p"
FALLBACK_LINK = "a[href*='job'], a[href*='career'], a[href]"
FALLBACK_PUBLISHED = "time, [datetime], [class*='date'], [class*='posted']"
JOB_ANCHORS = (
    "a[href*='job'], a[href*='career'], a[href*='vacancy'], "
    "a[href*='opening'], a[href*='recruit']"
)
BROAD_CONTAINERS = "article, li, [class*='job'], [data-job-id], section"

MAX_DESCRIPTION_CHARS = 4000
CONTEXT_CHARS = 600


def _select_first(container: Tag, selector: str) -> Optional[Tag]:
    if not selector.strip():
        return None
    try:
        return container.select_one(selector)
    except (SelectorSyntaxError, ValueError) as e:
        logger.warning(f"Invalid selector {selector!r}: {e}")
        return None


def safe_text(container: Tag, selector: str) -> str:
    element = _select_first(container, selector)
    return normalize_whitespace(element.get_text(" ")) if element is not None else ""


def safe_attr(container: Tag, selector: str, attr: str) -> str:
    element = _select_first(container, selector)
    if element is None:
        return ""
    value = element.get(attr)
    return value.strip() if isinstance(value, str) else ""


def canonical_url(base_url: str, href: str) -> str:
    """Resolve ``href`` against the page and drop query and fragment."""
    if not href.strip():
        return ""
    parsed = urlparse(urljoin(base_url, href.strip()))
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return ""
    return urlunparse(parsed._replace(query="", fragment=""))


def _is_pdf_url(url: str) -> bool:
    return urlparse(url).path.lower().endswith(".pdf")


def find_pdf_link(container: Tag, base_url: str, listing_url: str) -> Optional[str]:
    if _is_pdf_url(listing_url):
        return listing_url
    for anchor in container.select("a[href]"):
        resolved = urljoin(base_url, anchor["href"].strip())
        parsed = urlparse(resolved)
        if parsed.scheme in ("http", "https") and _is_pdf_url(resolved):
            return urlunparse(parsed._replace(fragment=""))
    return None


def _candidate_text_ok(element: Tag) -> bool:
    text = normalize_whitespace(element.get_text(" "))
    if len(text) < 20:
        return False
    return looks_like_job_listing(text) or mentions_meghalaya(text)


def collect_heuristic_containers(soup: BeautifulSoup, max_items: int) -> List[Tag]:
    """Guess listing containers when the configured selector matches nothing."""
    max_scan = max(max_items * 8, 300)
    selected: List[Tag] = []
    seen = set()

    for anchor in soup.select(JOB_ANCHORS)[:max_scan]:
        if len(selected) >= max_items:
            break
        container = anchor.find_parent(["article", "li", "section", "div"]) or anchor.parent
        if container is None or id(container) in seen or not _candidate_text_ok(container):
            continue
        seen.add(id(container))
        selected.append(container)

    if not selected:
        for element in soup.select(BROAD_CONTAINERS)[:max_scan]:
            if len(selected) >= max_items:
                break
            if id(element) in seen or not _candidate_text_ok(element):
                continue
            seen.add(id(element))
            selected.append(element)

    return selected


class HtmlScraper(BaseScraper):
    """Selector-driven scraper for listing pages"""

    source = "html"

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        max_items_per_source: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.timeout_seconds = timeout_seconds or settings.scrape_timeout_seconds
        self.max_items = max_items_per_source or settings.scrape_max_items_per_source
        self._client = client

    async def scrape(self, source: SourceConfig) -> SourceScrapeResult:
        stats = SourceScrapeStats(source=source.name)
        selectors = source.selectors
        required = [
            selectors.job_container,
            selectors.title,
            selectors.location,
            selectors.company,
            selectors.link,
            selectors.description,
        ]
        if any(not selector.strip() for selector in required):
            stats.parse_errors += 1
            stats.error_message = "Missing one or more required selectors."
            return SourceScrapeResult(listings=[], stats=stats)

        try:
            html = await fetch_text(
                source.url,
                timeout_seconds=self.timeout_seconds,
                headers={"accept": "text/html,application/xhtml+xml"},
                client=self._client,
            )
        except httpx.HTTPError as e:
            raise ScrapeError(f"Failed to fetch {source.url}: {e}") from e

        soup = BeautifulSoup(html, "html.parser")
        stats.fetched = True

        try:
            containers = soup.select(selectors.job_container)
        except (SelectorSyntaxError, ValueError) as e:
            stats.parse_errors += 1
            stats.error_message = f"Invalid job container selector: {e}"
            return SourceScrapeResult(listings=[], stats=stats)
        if not containers:
            containers = collect_heuristic_containers(soup, self.max_items)

        listings = []
        for container in containers[: self.max_items]:
            stats.containers_scanned += 1
            listing = self._parse_listing(container, source)
            if listing is not None:
                listings.append(listing)

        return SourceScrapeResult(listings=listings, stats=stats)

    def _parse_listing(self, container: Tag, source: SourceConfig) -> Optional[RawListing]:
        selectors = source.selectors
        context_text = normalize_whitespace(container.get_text(" "))[:CONTEXT_CHARS]

        title = safe_text(container, selectors.title) or safe_text(container, FALLBACK_TITLE)
        if not title:
            title = safe_text(container, "a[href]")[:240]
        company = safe_text(container, selectors.company) or safe_text(container, FALLBACK_COMPANY)
        location = (
            safe_text(container, selectors.location)
            or safe_text(container, FALLBACK_LOCATION)
            or infer_location(context_text)
        )
        description = safe_text(container, selectors.description) or safe_text(
            container, FALLBACK_DESCRIPTION
        )
        href = safe_attr(container, selectors.link, "href") or safe_attr(container, FALLBACK_LINK, "href")
        source_url = canonical_url(source.url, href)

        if not title or not source_url:
            return None

        published_selector = selectors.published_at or FALLBACK_PUBLISHED
        published_text = safe_attr(container, published_selector, "datetime") or safe_text(
            container, published_selector
        )

        return RawListing(
            title=title,
            company=company or "Unknown",
            location=location,
            description=(description or context_text)[:MAX_DESCRIPTION_CHARS],
            source_url=source_url,
            pdf_source_url=find_pdf_link(container, source.url, source_url),
            published_text=published_text,
            context_text=context_text,
        )
