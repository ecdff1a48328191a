"""
Crawl settings

Reads config/settings.yaml into a ConfigLoader with typed getters per
section and rejects settings the crawler cannot honor.
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

MAX_CONCURRENCY = 5

PACING_RANGES = ('between_tasks', 'keystroke_ms', 'between_fields', 'settle', 'warmup_dwell')

# (config key, env fallback)
PROXY_FIELDS = {
    'host': ('browser.proxy.host', 'PROXY_HOST'),
    'port': ('browser.proxy.port', 'PROXY_PORT'),
    'username': ('browser.proxy.username', 'PROXY_USER'),
    'password': ('browser.proxy.password', 'PROXY_PASS'),
}


class ConfigValidationError(ValueError):
    """A setting is out of range or inconsistent with another setting"""


def _require(ok: bool, message: str) -> None:
    if not ok:
        raise ConfigValidationError(f"Invalid config: {message}")


def _check_non_negative(value: Any, field: str) -> None:
    if value is not None:
        _require(float(value) >= 0, f"'{field}' must be >= 0, got {value}")


def _check_positive(value: Any, field: str) -> None:
    if value is not None:
        _require(float(value) > 0, f"'{field}' must be > 0, got {value}")


def _check_range(low: Any, high: Any, field: str) -> None:
    _check_non_negative(low, f"{field}_min")
    _check_non_negative(high, f"{field}_max")
    if low is not None and high is not None:
        _require(float(low) <= float(high), f"'{field}_min' ({low}) exceeds '{field}_max' ({high})")


class ConfigLoader:
    """Crawl settings backed by a YAML mapping"""

    def __init__(self, config_path: str = "config/settings.yaml", data: Optional[Dict[str, Any]] = None):
        self.config_path = Path(config_path)
        self.config: Dict[str, Any] = {}
        if data is None:
            self.config = self._read()
        else:
            self.config = data
        self._validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigLoader":
        """Settings from an in-memory mapping, validated like a file"""
        return cls(config_path="<memory>", data=data)

    def _read(self) -> Dict[str, Any]:
        if not self.config_path.is_file():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")
        try:
            with self.config_path.open('r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error("Could not parse %s: %s", self.config_path, e)
            raise
        logger.info("✓ Settings read from %s", self.config_path)
        return data if data is not None else {}

    def _validate(self) -> None:
        _require(isinstance(self.config, dict), "top level must be a mapping")

        _check_non_negative(self.get('search.pages_per_term'), 'search.pages_per_term')
        _check_positive(self.get('search.results_per_page'), 'search.results_per_page')

        concurrency = self.get('crawl.concurrency')
        _check_positive(concurrency, 'crawl.concurrency')
        if concurrency is not None:
            _require(int(concurrency) <= MAX_CONCURRENCY,
                     f"'crawl.concurrency' must be <= {MAX_CONCURRENCY}, got {concurrency}")
        _check_non_negative(self.get('crawl.max_retries'), 'crawl.max_retries')
        _check_positive(self.get('crawl.task_timeout'), 'crawl.task_timeout')

        for key in ('max_pool_size', 'max_usage_count', 'max_error_score'):
            _check_positive(self.get(f'session_pool.{key}'), f'session_pool.{key}')
        _require(self.get_concurrency() <= self.get_max_pool_size(),
                 "'crawl.concurrency' must be <= 'session_pool.max_pool_size'")

        _check_positive(self.get('challenge.max_rounds'), 'challenge.max_rounds')
        _check_non_negative(self.get('challenge.poll_interval'), 'challenge.poll_interval')
        _check_non_negative(self.get('challenge.transition_wait'), 'challenge.transition_wait')

        for name in PACING_RANGES:
            _check_range(self.get(f'pacing.{name}_min'), self.get(f'pacing.{name}_max'), f'pacing.{name}')

        for key in ('page_timeout', 'navigation_timeout', 'launch_timeout'):
            _check_positive(self.get(f'browser.{key}'), f'browser.{key}')

        if self.is_proxy_enabled():
            _require(bool(self._proxy_server()),
                     "browser.proxy is enabled without a server; set browser.proxy.server, "
                     "browser.proxy.host and port, or PROXY_HOST and PROXY_PORT")

        logger.debug("✓ Settings validated")

    def get(self, key: str, default: Any = None) -> Any:
        """Dotted lookup, e.g. get('search.keywords')"""
        value: Any = self.config
        for part in key.split('.'):
            if not isinstance(value, dict):
                return default
            value = value.get(part, default)
        return value

    # === Search ===

    def get_keywords(self) -> List[str]:
        return list(self.get('search.keywords', []) or [])

    def get_location(self) -> str:
        return self.get('search.location', 'United States')

    def get_salary_hint(self) -> Optional[int]:
        """Get salary hint carried on each task"""
        value = self.get('search.salary_hint', None)
        return int(value) if value is not None else None

    def get_pages_per_term(self) -> int:
        """Get number of result pages to walk per search term"""
        return int(self.get('search.pages_per_term', 5))

    def get_results_per_page(self) -> int:
        """Get the number of cards the target shows per results page"""
        return int(self.get('search.results_per_page', 10))

    # === Crawl ===

    def get_concurrency(self) -> int:
        """Get worker pool size"""
        return int(self.get('crawl.concurrency', 1))

    def get_max_retries(self) -> int:
        """Get retry budget for challenge timeouts"""
        return int(self.get('crawl.max_retries', 2))

    def get_task_timeout(self) -> float:
        """Get per-task handler ceiling in seconds"""
        return float(self.get('crawl.task_timeout', 120))

    def is_warmup_enabled(self) -> bool:
        """Check if fresh sessions should visit the landing page first"""
        return bool(self.get('crawl.warmup', True))

    # === Session Pool ===

    def get_max_pool_size(self) -> int:
        return int(self.get('session_pool.max_pool_size', 10))

    def get_max_usage_count(self) -> int:
        return int(self.get('session_pool.max_usage_count', 5))

    def get_max_error_score(self) -> int:
        return int(self.get('session_pool.max_error_score', 3))

    # === Challenge ===

    def get_challenge_max_rounds(self) -> int:
        return int(self.get('challenge.max_rounds', 12))

    def get_challenge_poll_interval(self) -> float:
        return float(self.get('challenge.poll_interval', 5.0))

    def get_challenge_transition_wait(self) -> float:
        return float(self.get('challenge.transition_wait', 3.0))

    # === Pacing ===

    def get_pacing_range(self, name: str, default_min: float, default_max: float) -> Tuple[float, float]:
        """Get a (min, max) delay pair from pacing.<name>_min / pacing.<name>_max"""
        low = float(self.get(f'pacing.{name}_min', default_min))
        high = float(self.get(f'pacing.{name}_max', default_max))
        return low, high

    # === Target ===

    def get_base_url(self) -> str:
        """Get the landing surface URL"""
        return (self.get('target.base_url', 'https://www.indeed.com') or '').rstrip('/')

    def get_source_label(self) -> str:
        return self.get('target.source', 'indeed-direct')

    # === Filters ===

    def get_excluded_companies(self) -> List[str]:
        return list(self.get('filters.excluded_companies', []) or [])

    def is_salary_name_filter_enabled(self) -> bool:
        return bool(self.get('filters.reject_salary_like_company', True))

    # === Browser ===

    def is_headless(self) -> bool:
        return bool(self.get('browser.headless', True))

    def _millis(self, key: str, default_seconds: float) -> int:
        return int(float(self.get(key, default_seconds)) * 1000)

    def get_page_timeout(self) -> int:
        """Default action timeout, in ms (configured in seconds)"""
        return self._millis('browser.page_timeout', 30)

    def get_navigation_timeout(self) -> int:
        """Default navigation timeout, in ms (configured in seconds)"""
        return self._millis('browser.navigation_timeout', 30)

    def get_launch_timeout(self) -> int:
        return self._millis('browser.launch_timeout', 60)

    def get_browser_channel(self) -> str:
        return self.get('browser.channel', '') or ''

    def get_browser_executable_path(self) -> str:
        return self.get('browser.executable_path', '') or ''

    def use_stealth(self) -> bool:
        """Whether playwright-stealth patches are layered on the built-in init script"""
        return bool(self.get('browser.use_stealth', False))

    # === Proxy ===

    def is_proxy_enabled(self) -> bool:
        """Only the config file can turn the proxy on; env vars never do"""
        return bool(self.get('browser.proxy.enabled', False))

    def get_proxy_provider(self) -> str:
        provider = self.get('browser.proxy.provider', '') or os.getenv('PROXY_PROVIDER') or ''
        return provider.strip().lower() or 'generic'

    def get_proxy_username_template(self) -> Optional[str]:
        return (self.get('browser.proxy.username_template', '') or '').strip() or None

    def _proxy_value(self, name: str) -> str:
        key, env = PROXY_FIELDS[name]
        configured = str(self.get(key, '') or '').strip()
        return configured or (os.getenv(env) or '').strip()

    def _proxy_server(self) -> str:
        server = (self.get('browser.proxy.server', '') or '').strip()
        if not server:
            host, port = self._proxy_value('host'), self._proxy_value('port')
            server = f"{host}:{port}" if host and port else ''
        if server and '://' not in server:
            server = f"http://{server}"
        return server

    def get_proxy_manager_settings(self) -> Dict[str, Any]:
        """
        Keyword arguments for ProxyManagerSettings.

        Host, port and credentials fall back to PROXY_HOST, PROXY_PORT,
        PROXY_USER and PROXY_PASS from the environment; only the config file
        can enable the proxy.
        """
        enabled = self.is_proxy_enabled()
        return {
            'enabled': enabled,
            'provider': self.get_proxy_provider(),
            'server': self._proxy_server() if enabled else '',
            'username': self._proxy_value('username'),
            'password': self._proxy_value('password'),
            'username_template': self.get_proxy_username_template(),
        }

    # === Logging / output ===

    def get_log_level(self) -> str:
        return self.get('logging.level', 'INFO')

    def get_log_file(self) -> Path:
        """Log path with {timestamp} expanded"""
        template = self.get('logging.log_file', 'logs/crawl_engine.log')
        return Path(template.replace('{timestamp}', datetime.now().strftime('%Y%m%d_%H%M%S')))

    def get_metrics_template(self) -> str:
        return self.get('output.metrics_file', 'output/run_metrics_{timestamp}.json')

    def __repr__(self) -> str:
        return f"<ConfigLoader {self.config_path}: {len(self.get_keywords())} terms in {self.get_location()}>"


def load_config(config_path: str = "config/settings.yaml") -> ConfigLoader:
    return ConfigLoader(config_path)
