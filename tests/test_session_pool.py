"""
Tests for the session pool and per-session proxy handles.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from crawl_engine.proxy_manager import ProxyManager, ProxyManagerSettings
from crawl_engine.session_pool import PoolExhausted, SessionOutcome, SessionPool

from conftest import sequential_ids


def make_pool(**kwargs):
    kwargs.setdefault("id_factory", sequential_ids())
    return SessionPool(**kwargs)


class TestAcquire:
    def test_creates_up_to_capacity_then_raises(self):
        pool = make_pool(max_pool_size=2)

        first = pool.acquire()
        second = pool.acquire()

        assert first.session_id != second.session_id
        assert first.in_use and second.in_use
        with pytest.raises(PoolExhausted):
            pool.acquire()

    def test_reuses_idle_session(self):
        pool = make_pool()
        session = pool.acquire()
        pool.release(session, SessionOutcome.SUCCESS)

        assert pool.acquire() is session
        assert pool.stats()["created"] == 1

    def test_prefer_picks_requested_session(self):
        pool = make_pool()
        a = pool.acquire()
        b = pool.acquire()
        pool.release(a, SessionOutcome.SUCCESS)
        pool.release(b, SessionOutcome.SUCCESS)

        assert pool.acquire(prefer=b.session_id) is b

    def test_exclude_skips_sessions_while_capacity_remains(self):
        pool = make_pool(max_pool_size=3)
        a = pool.acquire()
        pool.release(a, SessionOutcome.ERROR)

        fresh = pool.acquire(exclude=[a.session_id])

        assert fresh is not a
        assert fresh.session_id == "s2"

    def test_excluded_session_reused_when_pool_is_full(self):
        pool = make_pool(max_pool_size=1)
        a = pool.acquire()
        pool.release(a, SessionOutcome.ERROR)

        assert pool.acquire(exclude=[a.session_id]) is a

    def test_no_double_assignment_under_threads(self):
        pool = make_pool(max_pool_size=5)
        barrier = threading.Barrier(5)

        def grab():
            barrier.wait()
            return pool.acquire()

        with ThreadPoolExecutor(max_workers=5) as executor:
            sessions = list(executor.map(lambda _: grab(), range(5)))

        assert len({s.session_id for s in sessions}) == 5
        assert pool.active_count == 5


class TestRelease:
    def test_usage_cap_retires(self):
        pool = make_pool(max_usage_count=2)
        session = pool.acquire()

        assert pool.release(session, SessionOutcome.SUCCESS) is False
        pool.acquire(prefer=session.session_id)
        assert pool.release(session, SessionOutcome.SUCCESS) is True

        assert session.retired
        assert session.retire_reason == "usage_cap"
        assert not pool.is_active(session.session_id)

    def test_error_cap_retires(self):
        pool = make_pool(max_usage_count=10, max_error_score=2)
        session = pool.acquire()
        pool.release(session, SessionOutcome.ERROR)
        pool.acquire(prefer=session.session_id)

        assert pool.release(session, SessionOutcome.ERROR) is True
        assert session.error_score == 2
        assert session.retire_reason == "error_cap"

    def test_success_does_not_raise_error_score(self):
        pool = make_pool()
        session = pool.acquire()
        pool.release(session, SessionOutcome.SUCCESS)

        assert session.usage_count == 1
        assert session.error_score == 0

    def test_retirement_frees_a_slot(self):
        pool = make_pool(max_pool_size=1, max_usage_count=1)
        old = pool.acquire()
        pool.release(old, SessionOutcome.SUCCESS)

        new = pool.acquire()

        assert new is not old
        assert pool.stats() == {
            "active": 1,
            "in_use": 1,
            "capacity": 1,
            "created": 2,
            "retired": 1,
            "retire_reasons": {"usage_cap": 1},
        }

    def test_manual_retire(self):
        pool = make_pool()
        session = pool.acquire()

        pool.retire(session, reason="blocked")

        assert session.retired and not session.in_use
        assert pool.active_count == 0


class TestProxyHandles:
    def test_each_session_gets_its_own_sticky_identity(self):
        manager = ProxyManager(
            ProxyManagerSettings(
                enabled=True,
                provider="iproyal",
                server="http://geo.iproyal.com:12321",
                username="user",
                password="secret",
            )
        )
        pool = make_pool(proxy_factory=manager.proxy_for_session)

        a = pool.acquire()
        b = pool.acquire()

        assert a.proxy == {
            "server": "http://geo.iproyal.com:12321",
            "username": "user-session-s1",
            "password": "secret",
        }
        assert b.proxy["username"] == "user-session-s2"
        assert a.proxy["username"] != b.proxy["username"]

    def test_username_template(self):
        manager = ProxyManager(
            ProxyManagerSettings(enabled=True, server="http://proxy:8000", username_template="cust-{session}-us")
        )

        assert manager.proxy_for_session("abc")["username"] == "cust-abc-us"

    def test_already_tagged_username_left_alone(self):
        manager = ProxyManager(
            ProxyManagerSettings(enabled=True, provider="iproyal", server="http://p:1", username="user-session-fixed")
        )

        assert manager.proxy_for_session("abc")["username"] == "user-session-fixed"

    def test_disabled_proxy_gives_no_handle(self):
        pool = make_pool(proxy_factory=ProxyManager().proxy_for_session)

        assert pool.acquire().proxy is None


def test_from_config(sample_config):
    pool = SessionPool.from_config(sample_config, ProxyManager.from_config(sample_config))

    assert pool.max_pool_size == 4
    assert pool.max_usage_count == 5
    assert pool.max_error_score == 3
    assert pool.acquire().proxy is None
