"""
Per-worker Playwright browser and per-session browser views.

The sync Playwright API is bound to the thread that started it, so every crawl
worker owns one BrowserFactory. A session's cookies travel with the Session
object (storage_state), which lets any worker open a view for it.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from crawl_engine.session_pool import Session
from crawl_engine.stealth import IGNORE_DEFAULT_ARGS, StealthProfile

logger = logging.getLogger(__name__)


def _looks_like_proxy_failure(message: str) -> bool:
    msg = (message or "").lower()
    markers = (
        "err_proxy_connection_failed",
        "err_tunnel_connection_failed",
        "proxy authentication",
        "authentication required",
        "407",
    )
    return any(marker in msg for marker in markers)


@dataclass
class BrowserView:
    """A browser context + page bound to one session"""

    session: Session
    context: Any
    page: Any
    # (search_term, location, page_index) of the results page currently shown
    position: Optional[tuple] = None
    # the session storage_state this context was opened with or last saved
    state: Optional[Dict[str, Any]] = None

    def is_stale(self) -> bool:
        """Another view saved newer cookies for this session since"""
        return self.session.storage_state is not self.state


class BrowserFactory:
    """Launches one Chromium per worker and opens stealth contexts per session"""

    def __init__(
        self,
        headless: bool = True,
        launch_timeout_ms: int = 60000,
        page_timeout_ms: int = 30000,
        navigation_timeout_ms: int = 30000,
        stealth: Optional[StealthProfile] = None,
        channel: str = "",
        executable_path: str = "",
    ):
        self.headless = headless
        self.launch_timeout_ms = launch_timeout_ms
        self.page_timeout_ms = page_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms
        self.stealth = stealth or StealthProfile()
        self.channel = channel
        self.executable_path = executable_path
        self.playwright = None
        self.browser = None

    @classmethod
    def from_config(cls, config: Any) -> "BrowserFactory":
        return cls(
            headless=config.is_headless(),
            launch_timeout_ms=config.get_launch_timeout(),
            page_timeout_ms=config.get_page_timeout(),
            navigation_timeout_ms=config.get_navigation_timeout(),
            stealth=StealthProfile.from_config(config),
            channel=config.get_browser_channel(),
            executable_path=config.get_browser_executable_path(),
        )

    def start(self) -> None:
        logger.info("Starting browser...")
        executable_path = self.executable_path or None
        if executable_path and not Path(executable_path).exists():
            logger.warning("Browser executable not found: %s", executable_path)
            executable_path = None

        self.playwright = sync_playwright().start()
        launch_kwargs: Dict[str, Any] = dict(
            headless=self.headless,
            args=self.stealth.launch_args(),
            ignore_default_args=IGNORE_DEFAULT_ARGS,
            timeout=self.launch_timeout_ms,
        )
        if self.channel:
            launch_kwargs["channel"] = self.channel
        if executable_path:
            launch_kwargs["executable_path"] = executable_path
        try:
            self.browser = self.playwright.chromium.launch(**launch_kwargs)
        except Exception:
            self.playwright.stop()
            self.playwright = None
            raise
        logger.info("Browser started successfully")

    def open_view(self, session: Session) -> BrowserView:
        """Create a fresh context for the session with the stealth bundle applied"""
        if self.browser is None:
            raise RuntimeError("Browser not started")

        options = self.stealth.context_options(proxy=session.proxy, storage_state=session.storage_state)
        try:
            context = self.browser.new_context(**options)
        except PlaywrightError as exc:
            if session.proxy and _looks_like_proxy_failure(str(exc)):
                logger.error(
                    "Proxy connection/auth failed for %s. Check credentials and connectivity.",
                    session.proxy.get("server"),
                )
            raise

        self.stealth.apply(context)
        page = context.new_page()
        page.set_default_timeout(self.page_timeout_ms)
        page.set_default_navigation_timeout(self.navigation_timeout_ms)
        logger.debug("Browser view opened for session %s", session.session_id)
        return BrowserView(session=session, context=context, page=page, state=session.storage_state)

    def save_state(self, view: BrowserView) -> None:
        """Copy the context's cookies onto the session so any worker can reuse them"""
        if view.session.retired:
            return
        try:
            view.state = view.context.storage_state()
            view.session.storage_state = view.state
        except PlaywrightError:
            logger.debug("Could not save storage state for %s", view.session.session_id, exc_info=True)

    def close_view(self, view: BrowserView, save: bool = True) -> None:
        """Save the session's cookies (unless retired or told not to) and close the context"""
        if save:
            self.save_state(view)
        try:
            view.context.close()
        except PlaywrightError:
            logger.debug("Browser context close failed", exc_info=True)

    def stop(self) -> None:
        """Clean up browser resources"""
        try:
            if self.browser:
                self.browser.close()
        except PlaywrightError:
            logger.debug("Browser close failed", exc_info=True)
        try:
            if self.playwright:
                self.playwright.stop()
        except Exception:
            logger.debug("Playwright stop failed", exc_info=True)
        self.browser = None
        self.playwright = None
        logger.info("Browser closed")
