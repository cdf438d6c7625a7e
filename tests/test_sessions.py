from __future__ import annotations

import allure
import pytest

from bulkrun.errors import ChannelCreationError
from bulkrun.sessions import SessionPool
from fakes import FakeChannelFactory

pytestmark = [
    allure.epic("Bulk Engine"),
    allure.feature("Session Pool"),
]


def test_local_pool_accounts_slots_up_to_limit() -> None:
    pool = SessionPool(max_concurrency=2)

    first = pool.acquire()
    second = pool.acquire()

    assert {first.session_id, second.session_id} == {1, 2}
    assert first.channel is None
    assert not pool.has_capacity()
    with pytest.raises(RuntimeError, match="capacity"):
        pool.acquire()

    pool.release(first.session_id)
    assert pool.has_capacity()
    assert pool.acquire().session_id == first.session_id


def test_remote_pool_reuses_idle_session_for_same_target() -> None:
    factory = FakeChannelFactory()
    pool = SessionPool(max_concurrency=3, channel_factory=factory)

    session = pool.acquire("web1")
    pool.release(session.session_id)
    again = pool.acquire("web1")

    assert again is session
    assert len(factory.created) == 1
    assert session.channel is not None
    assert session.channel.opened


def test_remote_pool_repoints_idle_session_when_full() -> None:
    factory = FakeChannelFactory()
    pool = SessionPool(max_concurrency=1, channel_factory=factory)

    session = pool.acquire("web1")
    pool.release(session.session_id)
    repointed = pool.acquire("web2")

    assert repointed.session_id == session.session_id
    assert repointed.target == "web2"
    assert factory.created[0].closed.is_set()
    assert not factory.created[1].closed.is_set()


def test_channel_creation_failure_frees_the_slot() -> None:
    factory = FakeChannelFactory(failures_per_target={"down": 1})
    pool = SessionPool(max_concurrency=1, channel_factory=factory)

    with pytest.raises(ChannelCreationError, match="cannot reach down"):
        pool.acquire("down")

    assert pool.has_capacity()
    assert pool.acquire("down").target == "down"


def test_discard_and_close_all_tear_down_channels() -> None:
    factory = FakeChannelFactory()
    pool = SessionPool(max_concurrency=2, channel_factory=factory)
    first = pool.acquire("a")
    pool.acquire("b")

    pool.release(first.session_id, discard=True)
    assert pool.get(first.session_id) is None
    assert factory.created[0].closed.is_set()

    pool.close_all()
    assert factory.created[1].closed.is_set()
    assert pool.in_use_count == 0


def test_remote_pool_requires_target() -> None:
    pool = SessionPool(max_concurrency=1, channel_factory=FakeChannelFactory())

    with pytest.raises(ValueError, match="target"):
        pool.acquire()
