"""
Fingerprint softening for Playwright browser views.

Provides:
- Stealth browser launch arguments
- An init script masking automation markers and normalizing plugins/languages
- A standard desktop user agent and header set
- Optional playwright-stealth on top
"""

import logging
from typing import Any, Dict, List

from playwright_stealth.stealth import Stealth

logger = logging.getLogger(__name__)


DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)

DEFAULT_HEADERS: Dict[str, str] = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "max-age=0",
    "Sec-Ch-Ua": '"Not A(Brand";v="99", "Google Chrome";v="121", "Chromium";v="121"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "Upgrade-Insecure-Requests": "1",
    "Referer": "https://www.google.com/",
}

CONTEXT_OPTIONS: Dict[str, Any] = {
    "viewport": {"width": 1920, "height": 1080},
    "user_agent": DESKTOP_USER_AGENT,
    "locale": "en-US",
    "timezone_id": "America/New_York",
}

# Browser launch arguments for stealth
STEALTH_ARGS: List[str] = [
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-site-isolation-trials",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--window-size=1920,1080",
    "--disable-infobars",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-ipc-flooding-protection",
    "--disable-hang-monitor",
    "--disable-popup-blocking",
    "--disable-prompt-on-repost",
    "--disable-sync",
    "--metrics-recording-only",
    "--no-first-run",
    "--password-store=basic",
    "--use-mock-keychain",
]

IGNORE_DEFAULT_ARGS: List[str] = ["--enable-automation"]


STEALTH_INIT_SCRIPT: str = """
// Remove webdriver property
Object.defineProperty(navigator, 'webdriver', {
    get: () => undefined,
    configurable: true
});

// Chrome runtime object
window.chrome = window.chrome || {};
window.chrome.runtime = window.chrome.runtime || {};
window.chrome.loadTimes = window.chrome.loadTimes || function() {};
window.chrome.csi = window.chrome.csi || function() {};
window.chrome.app = window.chrome.app || {};

// Realistic plugin list
Object.defineProperty(navigator, 'plugins', {
    get: () => {
        const plugins = [
            { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
            { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai', description: '' },
            { name: 'Native Client', filename: 'internal-nacl-plugin', description: '' },
        ];
        plugins.item = (i) => plugins[i] || null;
        plugins.namedItem = (name) => plugins.find(p => p.name === name) || null;
        plugins.refresh = () => {};
        return plugins;
    },
    configurable: true
});

// Languages
Object.defineProperty(navigator, 'languages', {
    get: () => ['en-US', 'en'],
    configurable: true
});

// Chromium driver markers
delete window.cdc_adoQpoasnfa76pfcZLmcfl_Array;
delete window.cdc_adoQpoasnfa76pfcZLmcfl_Promise;
delete window.cdc_adoQpoasnfa76pfcZLmcfl_Symbol;

// Permissions API
const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) => (
    parameters.name === 'notifications' ?
        Promise.resolve({ state: Notification.permission }) :
        originalQuery(parameters)
);
"""


class StealthProfile:
    """
    Applies the fingerprint-softening bundle to a browser context.

    Usage:
        profile = StealthProfile(use_playwright_stealth=True)
        context = browser.new_context(**profile.context_options(proxy=proxy))
        profile.apply(context)
    """

    def __init__(self, use_playwright_stealth: bool = False):
        self.use_playwright_stealth = use_playwright_stealth

    @classmethod
    def from_config(cls, config: Any) -> "StealthProfile":
        return cls(use_playwright_stealth=config.use_stealth())

    def launch_args(self) -> List[str]:
        return STEALTH_ARGS.copy()

    def context_options(self, **overrides: Any) -> Dict[str, Any]:
        options = dict(CONTEXT_OPTIONS)
        options.update({k: v for k, v in overrides.items() if v is not None})
        return options

    def apply(self, context: Any) -> None:
        """One-time setup for a fresh context; every page opened in it inherits it"""
        context.add_init_script(STEALTH_INIT_SCRIPT)
        context.set_extra_http_headers(DEFAULT_HEADERS)
        logger.debug("Stealth init script and headers added to context")

        if self.use_playwright_stealth:
            try:
                Stealth().apply_stealth_sync(context)
                logger.debug("Playwright-stealth applied to context")
            except Exception as exc:
                logger.warning("Failed to apply playwright-stealth: %s", exc)
