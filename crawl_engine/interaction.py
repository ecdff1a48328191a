"""
Human-like interaction with the target: search form submission, pagination,
popup dismissal and scroll warm-up.
"""

import logging
import random
import re
from typing import Any, Optional, Sequence

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from crawl_engine.models import ChallengeState, PageAdvance, SearchTask
from crawl_engine.pacing import Pacing

logger = logging.getLogger(__name__)


QUERY_INPUT_SELECTORS: Sequence[str] = (
    "#text-input-what",
    "input[name='q']",
    "input[aria-label*='Job title']",
)

LOCATION_INPUT_SELECTORS: Sequence[str] = (
    "#text-input-where",
    "input[name='l']",
    "input[aria-label*='location']",
)

SUBMIT_SELECTORS: Sequence[str] = (
    ".yosegi-InlineWhatWhere-primaryButton",
    "button[type='submit']",
    "#whatWhereFormId button",
)

NEXT_PAGE_SELECTORS: Sequence[str] = (
    "a[data-testid='pagination-page-next']",
    "a[aria-label='Next Page']",
    "a[aria-label='Next']",
    "a[aria-label='Next page']",
    ".np:last-child a",
    "nav[role='navigation'] a:last-child",
)

RESULTS_COUNT_SELECTORS: Sequence[str] = (
    "[data-testid='searchcount-text']",
    ".jobsearch-JobCountAndSortPane-jobCount",
    "#searchCountPages",
)

POPUP_CLOSE_SELECTORS: Sequence[str] = (
    "[data-testid='modal-close-button']",
    ".pn-CloseButton",
    ".popover-x-button",
    "[aria-label='close']",
    ".icl-CloseButton",
    "#onetrust-accept-btn-handler",
)

_NUMBER = re.compile(r"\d[\d,]*")


class ChallengeTimeout(RuntimeError):
    """Raised when an anti-bot challenge did not clear within its round ceiling."""


def parse_results_count(text: str) -> Optional[int]:
    """
    Read the declared total from a results-count label.

    "1,234 jobs" -> 1234, "Page 2 of 87 jobs" -> 87. The largest number wins
    since the total is never smaller than the page number.
    """
    numbers = [int(match.replace(",", "")) for match in _NUMBER.findall(text or "")]
    return max(numbers) if numbers else None


class InteractionDriver:
    """Drives a Playwright page through search and pagination"""

    def __init__(
        self,
        base_url: str = "https://www.indeed.com",
        pacing: Optional[Pacing] = None,
        challenge_resolver: Any = None,
        navigation_timeout_ms: int = 30000,
        results_per_page: int = 10,
        rng: Optional[random.Random] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.pacing = pacing or Pacing()
        self.challenge_resolver = challenge_resolver
        self.navigation_timeout_ms = navigation_timeout_ms
        self.results_per_page = results_per_page
        self.rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: Any, pacing: Pacing, challenge_resolver: Any = None) -> "InteractionDriver":
        return cls(
            base_url=config.get_base_url(),
            pacing=pacing,
            challenge_resolver=challenge_resolver,
            navigation_timeout_ms=config.get_navigation_timeout(),
            results_per_page=config.get_results_per_page(),
        )

    # --- helpers ------------------------------------------------------------

    def _first(self, page: Any, selectors: Sequence[str]) -> Any:
        for selector in selectors:
            element = page.query_selector(selector)
            if element:
                return element
        return None

    def _goto(self, page: Any, url: str) -> None:
        page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)

    def _settle(self, page: Any) -> None:
        try:
            page.wait_for_load_state("networkidle", timeout=self.navigation_timeout_ms)
        except PlaywrightTimeoutError:
            logger.debug("Network did not go idle; continuing")
        self.pacing.settle.pause()

    def _gate(self, page: Any, where: str) -> None:
        if self.challenge_resolver is None:
            return
        state = self.challenge_resolver.resolve(page)
        if state == ChallengeState.TIMED_OUT:
            raise ChallengeTimeout(f"Challenge did not clear on {where}")

    def _fill(self, element: Any, text: str) -> None:
        element.click(click_count=3)
        element.fill("")
        element.type(text, delay=self.pacing.keystroke_ms.draw())

    def dismiss_popups(self, page: Any) -> int:
        closed = 0
        for selector in POPUP_CLOSE_SELECTORS:
            try:
                popup = page.query_selector(selector)
                if popup and popup.is_visible():
                    popup.click()
                    closed += 1
                    page.wait_for_timeout(1000)
            except PlaywrightError as exc:
                logger.debug("Popup dismissal failed for %s: %s", selector, exc)
        return closed

    def scroll_warmup(self, page: Any) -> None:
        try:
            page.mouse.move(self.rng.randint(100, 800), self.rng.randint(100, 600))
            page.evaluate("window.scrollBy(0, %d)" % self.rng.randint(200, 600))
            page.evaluate("window.scrollTo(0, document.body.scrollHeight / 2)")
            page.evaluate("window.scrollBy(0, -%d)" % self.rng.randint(50, 150))
        except PlaywrightError as exc:
            logger.debug("Scroll warm-up failed: %s", exc)

    # --- entry points -------------------------------------------------------

    def warm_up(self, page: Any) -> bool:
        """Visit the landing surface without searching"""
        try:
            self._goto(page, self.base_url)
            self.pacing.warmup_dwell.pause()
            self.scroll_warmup(page)
            logger.info("Session warmed up")
            return True
        except PlaywrightError as exc:
            logger.warning("Warm-up failed: %s", exc)
            return False

    def perform_initial_search(self, page: Any, task: SearchTask) -> bool:
        """
        Submit the search form from the landing page.

        Returns False when the form controls cannot be found. Navigation
        errors propagate; a landing challenge that never clears raises
        ChallengeTimeout.
        """
        logger.info("Performing human-like search for %s", task)
        self._goto(page, self.base_url)
        self._gate(page, "landing page")
        self._settle(page)
        self.dismiss_popups(page)

        what_input = self._first(page, QUERY_INPUT_SELECTORS)
        where_input = self._first(page, LOCATION_INPUT_SELECTORS)
        if not what_input or not where_input:
            logger.warning("Could not find search form inputs (url=%s)", page.url)
            return False

        self._fill(what_input, task.search_term)
        self.pacing.between_fields.pause()
        self._fill(where_input, task.location)
        self.pacing.between_fields.pause()

        submit = self._first(page, SUBMIT_SELECTORS)
        try:
            with page.expect_navigation(wait_until="domcontentloaded", timeout=self.navigation_timeout_ms):
                if submit:
                    submit.click()
                else:
                    logger.debug("No search button found; submitting with Enter")
                    where_input.press("Enter")
        except PlaywrightTimeoutError:
            logger.info("No navigation settle after search submit; leaving it to the challenge check")

        self.dismiss_popups(page)
        self.scroll_warmup(page)
        logger.info("Search submitted (url=%s)", page.url)
        return True

    def read_results_count(self, page: Any) -> Optional[int]:
        element = self._first(page, RESULTS_COUNT_SELECTORS)
        if not element:
            return None
        try:
            return parse_results_count(element.inner_text())
        except PlaywrightError as exc:
            logger.debug("Results count unreadable: %s", exc)
            return None

    def _find_next_control(self, page: Any) -> Any:
        for selector in NEXT_PAGE_SELECTORS:
            element = page.query_selector(selector)
            if not element:
                continue
            aria_disabled = (element.get_attribute("aria-disabled") or "").lower()
            if aria_disabled in ("true", "disabled") or element.get_attribute("disabled") is not None:
                return None
            return element
        return None

    def advance_page(self, page: Any, task: SearchTask) -> PageAdvance:
        """Move the results view from page_index - 1 to page_index"""
        total = self.read_results_count(page)
        expected_min = (task.page_index + 1) * self.results_per_page
        if total is not None and total < expected_min:
            logger.info(
                "Only %s total results, no page %s needed for '%s'",
                total,
                task.page_index + 1,
                task.search_term,
            )
            return PageAdvance.NO_MORE_PAGES

        next_control = self._find_next_control(page)
        if next_control is None:
            logger.info("No more pages available after page %s", task.page_index)
            return PageAdvance.NO_MORE_PAGES

        try:
            logger.info("Navigating to page %s for '%s'", task.page_index + 1, task.search_term)
            with page.expect_navigation(wait_until="domcontentloaded", timeout=self.navigation_timeout_ms):
                next_control.click()
        except PlaywrightError as exc:
            logger.warning("Error navigating to next page: %s", exc)
            return PageAdvance.ERROR

        self.dismiss_popups(page)
        self.scroll_warmup(page)
        return PageAdvance.ADVANCED

    def resume_results(self, page: Any, url: str) -> None:
        """Reopen a saved results URL in a fresh view"""
        logger.info("Resuming results view: %s", url)
        self._goto(page, url)
        self._gate(page, "resumed results page")
        self._settle(page)
        self.dismiss_popups(page)
