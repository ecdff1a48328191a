"""
Proxy manager for Playwright with per-session sticky identities.

Every crawl session gets its own proxy session token, so that providers which
pin an exit IP to the username (IPRoyal-style `-session-<id>` suffixes or an
explicit `{session}` template) hand each session a distinct identity. Retiring
a session and creating a new one therefore also rotates the exit IP.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def _looks_like_session_tagged(username: str) -> bool:
    lower = (username or "").lower()
    return "-session-" in lower or "_session_" in lower or "-sessid-" in lower or "_sessid_" in lower


@dataclass(frozen=True)
class ProxyManagerSettings:
    enabled: bool = False
    provider: str = "generic"
    server: str = ""
    username: str = ""
    password: str = ""
    username_template: Optional[str] = None


class ProxyManager:
    """
    Builds Playwright proxy dicts bound to a session token.

    Notes:
    - Playwright proxy settings are fixed per browser context. A new session
      means a new context.
    - Session affinity is provider-specific. Supported forms:
        - `username_template` containing `{session}`, or
        - auto-appending `-session-{session}` for provider == "iproyal".
      Any other provider gets the plain credentials (rotation then depends on
      the provider's own pool).
    """

    def __init__(self, settings: Optional[ProxyManagerSettings] = None):
        self.settings = settings or ProxyManagerSettings()

    @classmethod
    def from_config(cls, config: Any) -> "ProxyManager":
        """Build a ProxyManager from ConfigLoader."""
        settings = ProxyManagerSettings(**config.get_proxy_manager_settings())
        return cls(settings)

    @property
    def enabled(self) -> bool:
        return bool(self.settings.enabled)

    def _build_username(self, session_id: str) -> str:
        base = (self.settings.username or "").strip()
        template = (self.settings.username_template or "").strip() or None
        provider = (self.settings.provider or "generic").strip().lower()

        # Allow users to put `{session}` in username itself.
        if "{session}" in base and not template:
            template = base
            base = ""

        if template and session_id:
            return template.replace("{session}", session_id)

        if provider == "iproyal" and session_id and base and not _looks_like_session_tagged(base):
            return f"{base}-session-{session_id}"

        return base

    def proxy_for_session(self, session_id: str) -> Optional[Dict[str, str]]:
        """
        Return Playwright proxy dict for a session, or None when proxying is off.

        Example:
          {"server": "http://host:port", "username": "user-session-ab12", "password": "..."}
        """
        if not self.settings.enabled:
            return None

        proxy: Dict[str, str] = {"server": self.settings.server}

        username = self._build_username(session_id)
        password = (self.settings.password or "").strip()
        if username:
            proxy["username"] = username
        if password:
            proxy["password"] = password

        logger.debug("Proxy handle issued (provider=%s, session=%s)", self.settings.provider, session_id)
        return proxy
