"""
Shared fixtures and fakes for crawl engine tests.

FakePage / FakeElement stand in for Playwright's sync Page and ElementHandle:
elements are registered by exact selector string. FakeSite routes page.goto()
to a landing page with a search form and paginated results pages.
"""

import itertools
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qs, quote_plus, urlparse

import pytest
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from crawl_engine.browser import BrowserView
from crawl_engine.challenge import ChallengeResolver
from crawl_engine.config_loader import ConfigLoader
from crawl_engine.extractor import JobExtractor
from crawl_engine.interaction import InteractionDriver
from crawl_engine.pacing import Pacing
from crawl_engine.run_metrics import RunMetrics
from crawl_engine.session_pool import SessionPool

BASE_URL = "https://www.indeed.com"


class FakeElement:
    def __init__(
        self,
        text: str = "",
        attrs: Optional[Dict[str, str]] = None,
        children: Optional[Dict[str, List["FakeElement"]]] = None,
        visible: bool = True,
        on_click: Optional[Callable[[], None]] = None,
    ):
        self.text = text
        self.attrs = dict(attrs or {})
        self.children = children or {}
        self.visible = visible
        self.on_click = on_click
        self.value = ""
        self.clicks = 0
        self.typed = []
        self.pressed = []

    def inner_text(self):
        return self.text

    def text_content(self):
        return self.text

    def get_attribute(self, name):
        return self.attrs.get(name)

    def query_selector(self, selector):
        matches = self.children.get(selector) or []
        return matches[0] if matches else None

    def query_selector_all(self, selector):
        return list(self.children.get(selector) or [])

    def is_visible(self):
        return self.visible

    def click(self, **kwargs):
        self.clicks += 1
        if self.on_click:
            self.on_click()

    def fill(self, value):
        self.value = value

    def type(self, text, delay=0):
        self.value += text
        self.typed.append((text, delay))

    def press(self, key):
        self.pressed.append(key)


class FakeMouse:
    def __init__(self):
        self.moves = []

    def move(self, x, y):
        self.moves.append((x, y))


class FakePage:
    def __init__(self, url="about:blank", title="", body="", elements=None, router=None):
        self.url = url
        self._title = title
        self.body = body
        self.elements: Dict[str, List[FakeElement]] = dict(elements or {})
        self.router = router
        self.goto_calls: List[str] = []
        self.evaluated: List[str] = []
        self.waits: List[int] = []
        self.navigations = 0
        self.mouse = FakeMouse()

    def load(self, url, title="", body="", elements=None):
        self.url = url
        self._title = title
        self.body = body
        self.elements = dict(elements or {})

    def goto(self, url, wait_until=None, timeout=None):
        self.goto_calls.append(url)
        if self.router is not None:
            self.router(self, url)
        else:
            self.url = url

    def title(self):
        return self._title

    def inner_text(self, selector):
        return self.body

    def query_selector(self, selector):
        matches = self.elements.get(selector) or []
        return matches[0] if matches else None

    def query_selector_all(self, selector):
        return list(self.elements.get(selector) or [])

    def wait_for_selector(self, selector, timeout=None):
        for part in selector.split(", "):
            if self.elements.get(part):
                return self.elements[part][0]
        raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    def wait_for_load_state(self, state=None, timeout=None):
        return None

    def wait_for_timeout(self, ms):
        self.waits.append(ms)

    def evaluate(self, script):
        self.evaluated.append(script)

    @contextmanager
    def expect_navigation(self, **kwargs):
        yield
        self.navigations += 1

    def set_default_timeout(self, ms):
        pass

    def set_default_navigation_timeout(self, ms):
        pass


def make_card(title="Data Engineer", company="Acme Corp", location="Remote", jk="abc123", salary="", with_link=True):
    children = {}
    if title:
        children["h2.jobTitle span[title]"] = [FakeElement(title)]
    if company:
        children["[data-testid='company-name']"] = [FakeElement(company)]
    if location:
        children["[data-testid='text-location']"] = [FakeElement(location)]
    if salary:
        children[".salary-snippet"] = [FakeElement(salary)]
    if with_link:
        children["h2.jobTitle a"] = [FakeElement(attrs={"href": f"/rc/clk?jk={jk}&from=serp"})]
    attrs = {"data-jk": jk} if jk else {}
    return FakeElement(attrs=attrs, children=children)


class FakeSite:
    """
    Minimal job board: a landing page with a search form and results pages.

    `totals` maps a search term to the declared result total; results pages
    hold `per_page` cards each until the total runs out.
    """

    def __init__(self, totals=None, per_page=10, with_form=True, broken_next=False, base_url=BASE_URL):
        self.totals = dict(totals or {})
        self.per_page = per_page
        self.with_form = with_form
        self.broken_next = broken_next
        self.base_url = base_url
        self.searches: List[str] = []

    def route(self, page, url):
        parsed = urlparse(url)
        if parsed.path.startswith("/jobs"):
            query = parse_qs(parsed.query)
            term = query.get("q", [""])[0]
            start = int(query.get("start", ["0"])[0])
            self.show_results(page, term, start // self.per_page)
        else:
            self.show_landing(page)

    def results_url(self, term, page_index):
        return f"{self.base_url}/jobs?q={quote_plus(term)}&start={page_index * self.per_page}"

    def show_landing(self, page):
        elements = {}
        if self.with_form:
            what = FakeElement()
            where = FakeElement()
            submit = FakeElement(on_click=lambda: self._submit(page, what, where))
            elements = {
                "#text-input-what": [what],
                "#text-input-where": [where],
                ".yosegi-InlineWhatWhere-primaryButton": [submit],
            }
        page.load(self.base_url + "/", title="Job Search | Indeed", body="Find jobs", elements=elements)

    def _submit(self, page, what, where):
        self.searches.append(what.value)
        self.show_results(page, what.value, 0)

    def show_results(self, page, term, page_index):
        total = self.totals.get(term, 0)
        start = page_index * self.per_page
        count = max(min(self.per_page, total - start), 0)
        prefix = "".join(ch for ch in term if ch.isalnum())[:6]
        cards = [
            make_card(
                title=f"{term.title()} {start + i + 1}",
                company=f"Company {start + i + 1}",
                jk=f"{prefix}{start + i + 1}",
            )
            for i in range(count)
        ]
        elements = {
            ".job_seen_beacon": cards,
            "[data-jk]": cards,
            "[data-testid='searchcount-text']": [FakeElement(f"{total:,} jobs")],
        }
        if start + self.per_page < total:
            elements["a[data-testid='pagination-page-next']"] = [
                FakeElement(on_click=lambda: self._next(page, term, page_index + 1))
            ]
        page.load(self.results_url(term, page_index), title=f"{term} Jobs | Indeed", elements=elements)

    def _next(self, page, term, page_index):
        if self.broken_next:
            raise PlaywrightError("net::ERR_ABORTED while navigating")
        self.show_results(page, term, page_index)


class FakeContext:
    """Each snapshot is a new dict so cookie hand-offs can be told apart"""

    def __init__(self, label=""):
        self.label = label
        self.closed = False
        self.snapshots = 0

    def storage_state(self):
        self.snapshots += 1
        return {"cookies": [{"name": "CTK", "value": f"{self.label}-{self.snapshots}"}], "origins": []}

    def close(self):
        self.closed = True


class FakeBrowser:
    """Stands in for BrowserFactory: one per worker thread"""

    def __init__(self, site):
        self.site = site
        self.started = False
        self.stopped = False
        self.opened: List[str] = []
        self.closed: List[str] = []
        self.pages: List[FakePage] = []
        # storage_state each view was opened with
        self.opened_with: List[Optional[dict]] = []

    def start(self):
        self.started = True

    def open_view(self, session):
        page = FakePage(router=self.site.route)
        self.pages.append(page)
        self.opened.append(session.session_id)
        self.opened_with.append(session.storage_state)
        context = FakeContext(label=f"{session.session_id}@{id(self)}")
        return BrowserView(session=session, context=context, page=page, state=session.storage_state)

    def save_state(self, view):
        if not view.session.retired:
            view.state = view.context.storage_state()
            view.session.storage_state = view.state

    def close_view(self, view, save=True):
        if save:
            self.save_state(view)
        view.context.close()
        self.closed.append(view.session.session_id)

    def stop(self):
        self.stopped = True


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def sequential_ids(prefix="s"):
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter)}"


@pytest.fixture
def page():
    return FakePage()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def metrics():
    return RunMetrics(target="test")


@pytest.fixture
def site():
    return FakeSite(totals={"python developer": 10, "data engineer": 10})


@pytest.fixture
def session_pool():
    return SessionPool(max_pool_size=10, max_usage_count=5, max_error_score=3, id_factory=sequential_ids())


@pytest.fixture
def resolver(sleep, metrics):
    return ChallengeResolver(sleep=sleep, metrics=metrics)


@pytest.fixture
def driver(resolver):
    return InteractionDriver(base_url=BASE_URL, pacing=Pacing.disabled(), challenge_resolver=resolver)


@pytest.fixture
def extractor():
    return JobExtractor(base_url=BASE_URL, card_wait_ms=10)


@pytest.fixture
def sample_config_data():
    return {
        "search": {
            "keywords": ["python developer", "data engineer"],
            "location": "Remote",
            "pages_per_term": 3,
        },
        "crawl": {"concurrency": 2, "max_retries": 2, "task_timeout": 120},
        "session_pool": {"max_pool_size": 4, "max_usage_count": 5, "max_error_score": 3},
        "pacing": {"between_tasks_min": 0, "between_tasks_max": 0},
        "logging": {"level": "DEBUG", "log_file": "logs/test_{timestamp}.log"},
    }


@pytest.fixture
def sample_config(sample_config_data):
    return ConfigLoader.from_dict(sample_config_data)
