"""
Anti-bot challenge detection and resolution.

After any navigation that should land on target content, the resolver
classifies the view and, if an interstitial is blocking it, polls in bounded
rounds until the challenge clears or the round ceiling is hit. A CAPTCHA frame
is tracked as a slow-resolving sub-state (an attended run may solve it by
hand); it is never solved here.
"""

import logging
import time
from typing import Any, Callable, Sequence

from playwright.sync_api import Error as PlaywrightError

from crawl_engine.models import ChallengeState

logger = logging.getLogger(__name__)


CHALLENGE_INDICATORS: Sequence[str] = (
    "just a moment",
    "checking your browser",
    "please wait",
    "ddos protection",
    "cloudflare",
    "ray id",
    "attention required",
    "verify you are human",
    "security check",
    "browser check",
)

# Signals that real target content (results list, search form) has loaded
CONTENT_MARKERS: Sequence[str] = (
    "[data-jk]",
    ".job_seen_beacon",
    ".jobsearch-SerpJobCard",
    "#searchform",
    "#text-input-what",
)

CAPTCHA_MARKERS: Sequence[str] = (
    "iframe[src*='captcha']",
    "iframe[src*='challenge']",
    "iframe[src*='hcaptcha.com']",
    "iframe[src*='recaptcha']",
)

# Cloudflare interstitial paths only
CHALLENGE_URL_MARKERS: Sequence[str] = (
    "/cdn-cgi/challenge-platform",
    "__cf_chl",
    "challenges.cloudflare.com",
)

TARGET_TITLE_MARKERS: Sequence[str] = ("indeed", "jobs")

# Page-access errors raised while a navigation is in flight
TRANSIENT_ERROR_MARKERS: Sequence[str] = (
    "detached",
    "destroyed",
    "navigating",
    "navigation",
)


def is_transient_page_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)


class ChallengeResolver:
    """
    Bounded challenge state machine.

    resolve() returns NO_CHALLENGE, RESOLVED or TIMED_OUT. The sleep function
    is the round source: each polling round starts with one
    sleep(poll_interval) call.
    """

    def __init__(
        self,
        max_rounds: int = 12,
        poll_interval: float = 5.0,
        transition_wait: float = 3.0,
        indicators: Sequence[str] = CHALLENGE_INDICATORS,
        content_markers: Sequence[str] = CONTENT_MARKERS,
        captcha_markers: Sequence[str] = CAPTCHA_MARKERS,
        target_title_markers: Sequence[str] = TARGET_TITLE_MARKERS,
        sleep: Callable[[float], None] = time.sleep,
        metrics: Any = None,
    ):
        self.max_rounds = max_rounds
        self.poll_interval = poll_interval
        self.transition_wait = transition_wait
        self.indicators = tuple(i.lower() for i in indicators)
        self.content_markers = tuple(content_markers)
        self.captcha_markers = tuple(captcha_markers)
        self.target_title_markers = tuple(m.lower() for m in target_title_markers)
        self.sleep = sleep
        self.metrics = metrics

    @classmethod
    def from_config(cls, config: Any, sleep: Callable[[float], None] = time.sleep, metrics: Any = None) -> "ChallengeResolver":
        return cls(
            max_rounds=config.get_challenge_max_rounds(),
            poll_interval=config.get_challenge_poll_interval(),
            transition_wait=config.get_challenge_transition_wait(),
            sleep=sleep,
            metrics=metrics,
        )

    # --- page checks --------------------------------------------------------

    def _has_any(self, page: Any, selectors: Sequence[str]) -> bool:
        for selector in selectors:
            if page.query_selector(selector):
                return True
        return False

    def has_content_marker(self, page: Any) -> bool:
        return self._has_any(page, self.content_markers)

    def has_captcha(self, page: Any) -> bool:
        return self._has_any(page, self.captcha_markers)

    def has_indicator(self, text: str) -> bool:
        lower = (text or "").lower()
        return any(indicator in lower for indicator in self.indicators)

    def looks_like_challenge_url(self, url: str) -> bool:
        lower = (url or "").lower()
        return any(marker in lower for marker in CHALLENGE_URL_MARKERS)

    def looks_like_target_title(self, title: str) -> bool:
        lower = (title or "").lower()
        return any(marker in lower for marker in self.target_title_markers)

    def _body_text(self, page: Any) -> str:
        try:
            return page.inner_text("body") or ""
        except PlaywrightError as exc:
            logger.debug("Body text unavailable: %s", exc)
            return ""

    def _title(self, page: Any) -> str:
        try:
            return page.title() or ""
        except PlaywrightError as exc:
            if not is_transient_page_error(exc):
                raise
            return ""

    # --- state machine ------------------------------------------------------

    def detect(self, page: Any) -> ChallengeState:
        """Classify the current view without waiting"""
        try:
            if self.has_content_marker(page):
                return ChallengeState.NO_CHALLENGE
        except PlaywrightError as exc:
            if not is_transient_page_error(exc):
                raise
            logger.debug("Content check failed during navigation: %s", exc)

        title = self._title(page)
        if self.has_indicator(title) or self.has_indicator(self._body_text(page)):
            return ChallengeState.CHALLENGE_DETECTED
        return ChallengeState.NO_CHALLENGE

    def _check_round(self, page: Any, last_url: str) -> tuple:
        """One poll round. Returns (state, current_url)."""
        current_url = page.url or ""
        if current_url != last_url and not self.looks_like_challenge_url(current_url):
            logger.info("URL changed away from challenge page: %s", current_url)
            return ChallengeState.RESOLVED, current_url

        if self.has_content_marker(page):
            return ChallengeState.RESOLVED, current_url

        title = page.title() or ""
        if title and not self.has_indicator(title) and self.looks_like_target_title(title):
            logger.info("Title changed to target page: %s", title)
            return ChallengeState.RESOLVED, current_url

        if self.has_captcha(page):
            return ChallengeState.CAPTCHA_REQUIRED, current_url

        return ChallengeState.CHALLENGE_DETECTED, current_url

    def _recheck_after_transition(self, page: Any) -> bool:
        try:
            if self.has_content_marker(page):
                return True
            title = page.title() or ""
            return bool(title) and not self.has_indicator(title)
        except PlaywrightError as exc:
            if not is_transient_page_error(exc):
                raise
            logger.debug("Page still transitioning: %s", exc)
            return False

    def resolve(self, page: Any) -> ChallengeState:
        state = self.detect(page)
        if state != ChallengeState.CHALLENGE_DETECTED:
            return state

        logger.warning("Challenge detected (url=%s)", page.url)
        self._inc("challenges_detected")
        last_url = page.url or ""
        captcha_logged = False

        for round_number in range(1, self.max_rounds + 1):
            self.sleep(self.poll_interval)
            try:
                state, last_url = self._check_round(page, last_url)
            except PlaywrightError as exc:
                if not is_transient_page_error(exc):
                    raise
                logger.info("Page transitioning during challenge poll: %s", exc)
                self.sleep(self.transition_wait)
                if self._recheck_after_transition(page):
                    state = ChallengeState.RESOLVED
                else:
                    continue

            if state == ChallengeState.RESOLVED:
                logger.info("Challenge resolved after %d round(s)", round_number)
                self._inc("challenges_resolved")
                return state

            if state == ChallengeState.CAPTCHA_REQUIRED and not captcha_logged:
                captcha_logged = True
                self._inc("captchas_seen")
                logger.warning("CAPTCHA frame present; waiting for it to clear (no solver)")

            logger.debug(
                "Challenge still active (round %d/%d, state=%s)",
                round_number,
                self.max_rounds,
                state.value,
            )

        logger.warning("Challenge not resolved within %d rounds", self.max_rounds)
        self._inc("challenges_timed_out")
        return ChallengeState.TIMED_OUT

    def _inc(self, key: str) -> None:
        if self.metrics is not None:
            self.metrics.inc(key)
