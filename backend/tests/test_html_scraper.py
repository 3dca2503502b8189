"""
Tests for the selector-driven HTML scraper

Tests cover:
- LinkedIn search result markup
- Canonical listing URLs and PDF link discovery
- Heuristic containers when the configured selector matches nothing
- Missing selectors and invalid selectors as parse errors
- Fetch failures raise ScrapeError
"""

import httpx
import pytest

from jobfeed.services.scrapers import HtmlScraper, ScrapeError, SourceConfig, SourceSelectors
from jobfeed.services.scrapers.html import canonical_url
from jobfeed.services.sources import GENERIC_SELECTORS, LINKEDIN_SELECTORS

LINKEDIN_PAGE = """
<html><body>
<ul class="jobs-search__results-list">
  <li>
    <div class="base-card">
      <a class="base-card__full-link" href="https://in.linkedin.com/jobs/view/accountant-123?refId=abc&trk=x"></a>
      <h3 class="base-search-card__title"> Accountant </h3>
      <h4 class="base-search-card__subtitle">Shillong Traders</h4>
      <span class="job-search-card__location">Shillong, Meghalaya, India</span>
      <div class="base-search-card__metadata"><time datetime="2026-03-08">2 days ago</time></div>
    </div>
  </li>
  <li>
    <div class="base-card">
      <a class="base-card__full-link" href="/jobs/view/lecturer-456"></a>
      <h3 class="base-search-card__title">Lecturer</h3>
      <span class="job-search-card__location">Tura, Meghalaya</span>
    </div>
  </li>
  <li><p>No link or title here</p></li>
</ul>
</body></html>
"""

NOTICE_PAGE = """
<html><body>
<div class="content">
  <div class="notice">
    <a href="/recruitment/notice-7">Recruitment of Junior Assistants at Shillong office, apply before 20/03/2026</a>
    <a href="/files/advt-7.pdf#page=1">Download advertisement</a>
  </div>
  <div class="footer"><a href="/about">About us</a></div>
</div>
</body></html>
"""


def make_client(body: str, status_code: int = 200) -> httpx.AsyncClient:
    def handler(request):
        return httpx.Response(status_code, text=body, headers={"content-type": "text/html"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def linkedin_source() -> SourceConfig:
    return SourceConfig(
        name="LinkedIn Shillong",
        url="https://in.linkedin.com/jobs/search/?keywords=Shillong",
        selectors=LINKEDIN_SELECTORS,
        location_scope="meghalaya_only",
    )


class TestCanonicalUrl:
    def test_relative_href_is_resolved_without_query(self):
        assert canonical_url("https://example.com/jobs/", "view/1?ref=x#top") == "https://example.com/jobs/view/1"

    def test_non_http_href(self):
        assert canonical_url("https://example.com", "mailto:hr@example.com") == ""


class TestLinkedInMarkup:
    @pytest.mark.asyncio
    async def test_extracts_listings(self):
        async with make_client(LINKEDIN_PAGE) as client:
            scraper = HtmlScraper(timeout_seconds=5, max_items_per_source=10, client=client)
            result = await scraper.scrape(linkedin_source())

        assert result.stats.fetched
        assert result.stats.containers_scanned == 3
        assert len(result.listings) == 2

        first, second = result.listings
        assert first.title == "Accountant"
        assert first.company == "Shillong Traders"
        assert first.location == "Shillong, Meghalaya, India"
        assert first.source_url == "https://in.linkedin.com/jobs/view/accountant-123"
        assert first.published_text == "2026-03-08"
        assert first.pdf_source_url is None

        assert second.source_url == "https://in.linkedin.com/jobs/view/lecturer-456"
        assert second.company == "Unknown"

    @pytest.mark.asyncio
    async def test_max_items_caps_containers(self):
        async with make_client(LINKEDIN_PAGE) as client:
            scraper = HtmlScraper(timeout_seconds=5, max_items_per_source=1, client=client)
            result = await scraper.scrape(linkedin_source())

        assert result.stats.containers_scanned == 1
        assert len(result.listings) == 1


class TestHeuristicContainers:
    @pytest.mark.asyncio
    async def test_guesses_containers_and_finds_pdf(self):
        source = SourceConfig(
            name="Notices",
            url="https://megipr.example/notices",
            selectors=SourceSelectors(
                job_container=".no-such-listing",
                title="a",
                location=".location",
                company=".company",
                link="a[href*='recruit']",
                description="p",
            ),
        )
        async with make_client(NOTICE_PAGE) as client:
            scraper = HtmlScraper(timeout_seconds=5, max_items_per_source=10, client=client)
            result = await scraper.scrape(source)

        assert len(result.listings) == 1
        listing = result.listings[0]
        assert listing.source_url == "https://megipr.example/recruitment/notice-7"
        assert listing.pdf_source_url == "https://megipr.example/files/advt-7.pdf"
        assert listing.location == "Shillong, Meghalaya"
        assert "20/03/2026" in listing.context_text


class TestParseErrors:
    @pytest.mark.asyncio
    async def test_missing_required_selector(self):
        source = SourceConfig(
            name="Broken",
            url="https://example.com/jobs",
            selectors=SourceSelectors(
                job_container="li", title="", location=".loc", company=".co", link="a", description="p"
            ),
        )
        async with make_client("") as client:
            scraper = HtmlScraper(timeout_seconds=5, max_items_per_source=10, client=client)
            result = await scraper.scrape(source)

        assert result.listings == []
        assert result.stats.parse_errors == 1
        assert not result.stats.fetched

    @pytest.mark.asyncio
    async def test_invalid_container_selector(self):
        source = SourceConfig(
            name="Broken",
            url="https://example.com/jobs",
            selectors=SourceSelectors(
                job_container="li[[", title="h3", location=".loc", company=".co", link="a", description="p"
            ),
        )
        async with make_client(LINKEDIN_PAGE) as client:
            scraper = HtmlScraper(timeout_seconds=5, max_items_per_source=10, client=client)
            result = await scraper.scrape(source)

        assert result.listings == []
        assert result.stats.parse_errors == 1


class TestFetchFailures:
    @pytest.mark.asyncio
    async def test_http_error_status_raises(self):
        source = SourceConfig(name="Down", url="https://example.com/jobs", selectors=GENERIC_SELECTORS)
        async with make_client("oops", status_code=503) as client:
            scraper = HtmlScraper(timeout_seconds=5, max_items_per_source=10, client=client)
            with pytest.raises(ScrapeError):
                await scraper.scrape(source)

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        source = SourceConfig(name="Down", url="https://example.com/jobs", selectors=GENERIC_SELECTORS)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            scraper = HtmlScraper(timeout_seconds=5, max_items_per_source=10, client=client)
            with pytest.raises(ScrapeError):
                await scraper.scrape(source)
