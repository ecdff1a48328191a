"""
Job card extraction from a results view.

Selectors are data: each field maps to an ordered list of candidates, tried
first to last, first non-empty text wins. Only title and company are
required; a card missing either is discarded.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urljoin, urlparse

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from crawl_engine.models import RawJobRecord

logger = logging.getLogger(__name__)


# Indeed changes these frequently
CARD_SELECTORS: Sequence[str] = (
    ".job_seen_beacon",
    "[data-testid='slider_item']",
    ".jobsearch-SerpJobCard",
    ".result",
    "[data-jk]",
)

FIELD_SELECTORS: Dict[str, Sequence[str]] = {
    "title": (
        "h2.jobTitle span[title]",
        "h2 a span[title]",
        "[data-testid='job-title'] a span",
        ".jobTitle a span",
        "h2 span[title]",
        ".jobTitle span",
        "a[data-jk] span[title]",
    ),
    "company": (
        "[data-testid='company-name']",
        ".companyName",
        ".company",
        ".companyName a",
    ),
    "location": (
        "[data-testid='text-location']",
        "[data-testid='job-location']",
        ".companyLocation",
        ".location",
        ".locationsContainer",
    ),
    "salary": (
        ".salary-snippet",
        "[data-testid='attribute_snippet_testid']",
        ".estimated-salary",
        ".salaryText",
        ".salary",
    ),
    "description": (
        ".job-snippet",
        "[data-testid='job-snippet']",
        ".summary",
        ".jobCardShelfContainer .summary",
    ),
    "posted_date": (
        ".date",
        "[data-testid='myJobsStateDate']",
    ),
    "job_type_text": (
        ".jobMetadata",
        ".jobsearch-JobMetadataHeader",
    ),
}

LINK_SELECTORS: Sequence[str] = (
    "h2.jobTitle a",
    "h2 a",
    "[data-testid='job-title'] a",
    ".jobTitle a",
    "a[data-jk]",
)

REQUIRED_FIELDS: Tuple[str, ...] = ("title", "company")


def extract_text(element: Any) -> str:
    """
    Visible text, falling back to raw text content.

    An element whose text cannot be read either way raises, which discards
    the whole card.
    """
    if not element:
        return ""
    try:
        text = (element.inner_text() or "").strip()
    except PlaywrightError:
        text = ""
    if not text:
        text = (element.text_content() or "").strip()
    return " ".join(text.split())


class JobExtractor:
    """Turns job card elements into RawJobRecord objects"""

    def __init__(
        self,
        base_url: str = "https://www.indeed.com",
        source: str = "indeed-direct",
        field_selectors: Optional[Dict[str, Sequence[str]]] = None,
        card_selectors: Sequence[str] = CARD_SELECTORS,
        card_wait_ms: int = 10000,
    ):
        self.base_url = base_url.rstrip("/")
        self.source = source
        self.field_selectors = dict(FIELD_SELECTORS)
        if field_selectors:
            self.field_selectors.update(field_selectors)
        self.card_selectors = tuple(card_selectors)
        self.card_wait_ms = card_wait_ms

    @classmethod
    def from_config(cls, config: Any) -> "JobExtractor":
        return cls(base_url=config.get_base_url(), source=config.get_source_label())

    def first_text(self, card: Any, selectors: Sequence[str]) -> str:
        for selector in selectors:
            text = extract_text(card.query_selector(selector))
            if text:
                return text
        return ""

    def _first_attribute(self, card: Any, selectors: Sequence[str], name: str) -> str:
        for selector in selectors:
            element = card.query_selector(selector)
            if not element:
                continue
            value = (element.get_attribute(name) or "").strip()
            if value:
                return value
        return ""

    def _external_id(self, card: Any, href: str) -> str:
        job_id = (card.get_attribute("data-jk") or "").strip()
        if not job_id:
            job_id = self._first_attribute(card, ("[data-jk]",), "data-jk")
        if not job_id and href:
            job_id = (parse_qs(urlparse(href).query).get("jk", [""])[0] or "").strip()
        return job_id

    def extract_job(self, card: Any, search_term: str = "") -> Optional[RawJobRecord]:
        """Extract one card; None when a required field is missing or the card errors"""
        try:
            values = {
                name: self.first_text(card, selectors)
                for name, selectors in self.field_selectors.items()
            }
            missing = [name for name in REQUIRED_FIELDS if not values.get(name)]
            if missing:
                logger.debug("Discarding card without %s", ", ".join(missing))
                return None

            href = self._first_attribute(card, LINK_SELECTORS, "href")
            detail_url = urljoin(self.base_url + "/", href) if href else ""

            return RawJobRecord(
                title=values["title"],
                company=values["company"],
                location=values.get("location", ""),
                salary=values.get("salary", ""),
                description=values.get("description", ""),
                posted_date=values.get("posted_date", ""),
                job_type_text=values.get("job_type_text", ""),
                external_id=self._external_id(card, href),
                detail_url=detail_url,
                source=self.source,
                search_term=search_term,
            )
        except Exception as exc:
            logger.warning("Extraction error: %s", exc)
            return None

    def find_job_cards(self, page: Any) -> List[Any]:
        """Return the cards matched by the first selector that finds any"""
        try:
            page.wait_for_selector(", ".join(self.card_selectors), timeout=self.card_wait_ms)
        except PlaywrightTimeoutError:
            logger.debug("No job card selector appeared within %sms", self.card_wait_ms)

        for selector in self.card_selectors:
            cards = page.query_selector_all(selector)
            if cards:
                logger.info("Found %d job cards using selector: %s", len(cards), selector)
                return cards
        return []

    def extract_all(self, cards: Sequence[Any], search_term: str = "") -> Tuple[List[RawJobRecord], int]:
        """Extract every card. Returns (records, discarded_count)."""
        records = []
        discarded = 0
        for i, card in enumerate(cards):
            record = self.extract_job(card, search_term=search_term)
            if record is None:
                discarded += 1
                continue
            records.append(record)
            logger.debug("Extracted %s: %s", i, record)
        return records, discarded
