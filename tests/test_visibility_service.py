"""Visibility resolver tests"""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_event, utc
from models.calendar import Visibility
from models.database import CommunityMember, Friendship
from services.recurrence_service import expand
from services.relationship_oracle import SqlRelationshipOracle, StaticRelationshipOracle
from services.visibility_service import VisibilityResolver
from utils.exceptions import OracleUnavailable


async def resolve(occurrences, viewer_id, oracle, deadline=None):
    return await VisibilityResolver(oracle).resolve(occurrences, viewer_id, deadline)


def occurrences_of(*events):
    result = []
    for event in events:
        result.extend(expand(event, utc(2025, 1, 1), utc(2025, 3, 1)).occurrences)
    result.sort(key=lambda o: o.sort_key())
    return result


class SlowOracle(StaticRelationshipOracle):
    """Oracle whose friend checks for slow owners never finish in time"""

    def __init__(self, slow_owners, **kwargs):
        super().__init__(**kwargs)
        self.slow_owners = set(slow_owners)

    async def is_friend(self, viewer_id, owner_id):
        if owner_id in self.slow_owners:
            await asyncio.sleep(10)
        return await super().is_friend(viewer_id, owner_id)


FRIENDS_WEEKLY = make_event(
    id="evt_weekly",
    owner_id="alice",
    visibility=Visibility.FRIENDS,
    recurrence="FREQ=WEEKLY;COUNT=5",
)


async def test_public_visible_to_anonymous(static_oracle):
    occurrences = occurrences_of(make_event(visibility=Visibility.PUBLIC))
    result = await resolve(occurrences, None, static_oracle)
    assert len(result.items) == 1
    assert static_oracle.calls == []


@pytest.mark.parametrize("visibility", [Visibility.PRIVATE, Visibility.FRIENDS, Visibility.COMMUNITY])
async def test_anonymous_sees_only_public(static_oracle, visibility):
    event = make_event(visibility=visibility, community_id="zen-circle")
    result = await resolve(occurrences_of(event), None, static_oracle)
    assert result.items == []
    assert result.undetermined_event_ids == []
    assert static_oracle.calls == []


async def test_private_only_for_owner(static_oracle):
    occurrences = occurrences_of(make_event(visibility=Visibility.PRIVATE, owner_id="alice"))
    assert len((await resolve(occurrences, "alice", static_oracle)).items) == 1
    assert (await resolve(occurrences, "bob", static_oracle)).items == []


async def test_friends_event_hidden_from_non_friend(static_oracle):
    result = await resolve(occurrences_of(FRIENDS_WEEKLY), "mallory", static_oracle)
    assert result.items == []


async def test_friends_event_visible_to_owner_in_order(static_oracle):
    result = await resolve(occurrences_of(FRIENDS_WEEKLY), "alice", static_oracle)
    starts = [item.start for item in result.items]
    assert len(starts) == 5
    assert starts == sorted(starts)
    assert static_oracle.calls == []


async def test_friends_event_visible_to_friend(static_oracle):
    result = await resolve(occurrences_of(FRIENDS_WEEKLY), "bob", static_oracle)
    assert len(result.items) == 5


async def test_oracle_calls_are_coalesced(static_oracle):
    second = make_event(
        id="evt_other", owner_id="alice", visibility=Visibility.FRIENDS,
        recurrence="FREQ=DAILY;COUNT=10",
    )
    await resolve(occurrences_of(FRIENDS_WEEKLY, second), "bob", static_oracle)
    assert static_oracle.calls == [("friend", "bob", "alice")]


async def test_community_requires_membership(static_oracle):
    event = make_event(visibility=Visibility.COMMUNITY, community_id="zen-circle", owner_id="alice")
    occurrences = occurrences_of(event)
    assert len((await resolve(occurrences, "carol", static_oracle)).items) == 1
    assert (await resolve(occurrences, "bob", static_oracle)).items == []


async def test_community_event_without_community_is_excluded(static_oracle):
    event = make_event(visibility=Visibility.COMMUNITY, community_id=None)
    result = await resolve(occurrences_of(event), "carol", static_oracle)
    assert result.items == []
    assert static_oracle.calls == []


async def test_cancelled_events_are_annotated_not_removed(static_oracle):
    event = make_event(is_cancelled=True, cancellation_reason="rain")
    result = await resolve(occurrences_of(event), None, static_oracle)
    assert len(result.items) == 1
    assert result.items[0].is_cancelled is True
    assert result.items[0].cancellation_reason == "rain"


async def test_oracle_failure_is_fail_closed_for_affected_owner_only():
    oracle = StaticRelationshipOracle(
        friends=[("bob", "alice"), ("bob", "dave")], failing_subjects=["dave"]
    )
    alice_event = make_event(id="evt_alice", owner_id="alice", visibility=Visibility.FRIENDS)
    dave_event = make_event(id="evt_dave", owner_id="dave", visibility=Visibility.FRIENDS)
    result = await resolve(occurrences_of(alice_event, dave_event), "bob", oracle)
    assert [item.event_id for item in result.items] == ["evt_alice"]
    assert result.undetermined_event_ids == ["evt_dave"]


async def test_deadline_keeps_confirmed_occurrences():
    oracle = SlowOracle(slow_owners=["dave"], friends=[("bob", "alice"), ("bob", "dave")])
    resolver = VisibilityResolver(oracle)
    alice_event = make_event(id="evt_alice", owner_id="alice", visibility=Visibility.FRIENDS)
    dave_event = make_event(id="evt_dave", owner_id="dave", visibility=Visibility.FRIENDS)
    public_event = make_event(id="evt_public", visibility=Visibility.PUBLIC)

    result = await resolver.resolve(
        occurrences_of(alice_event, dave_event, public_event), "bob", deadline=0.2
    )
    assert sorted(item.event_id for item in result.items) == ["evt_alice", "evt_public"]
    assert result.undetermined_event_ids == ["evt_dave"]


async def test_per_call_oracle_timeout():
    oracle = SlowOracle(slow_owners=["dave"], friends=[("bob", "dave")])
    resolver = VisibilityResolver(oracle, oracle_timeout=0.05)
    dave_event = make_event(id="evt_dave", owner_id="dave", visibility=Visibility.FRIENDS)
    result = await resolver.resolve(occurrences_of(dave_event), "bob", deadline=5)
    assert result.items == []
    assert result.undetermined_event_ids == ["evt_dave"]


async def test_order_is_preserved(static_oracle):
    event = make_event(id="evt_x", recurrence="FREQ=DAILY;COUNT=3")
    occurrences = occurrences_of(event)
    reversed_input = list(reversed(occurrences))
    result = await resolve(reversed_input, "alice", static_oracle)
    assert [item.occurrence for item in result.items] == reversed_input


async def test_empty_input(static_oracle):
    result = await resolve([], "alice", static_oracle)
    assert result.items == []
    assert result.undetermined_event_ids == []


# ============ SQL oracle ============


async def test_sql_oracle_reads_relationship_tables(session_factory):
    async with session_factory() as session:
        session.add(Friendship(user_id="alice", friend_id="bob", accepted=True))
        session.add(Friendship(user_id="alice", friend_id="erin", accepted=False))
        session.add(CommunityMember(community_id="zen-circle", user_id="carol"))
        await session.commit()

    oracle = SqlRelationshipOracle(session_factory)
    assert await oracle.is_friend("bob", "alice")
    assert await oracle.is_friend("alice", "bob")
    assert not await oracle.is_friend("erin", "alice")
    assert await oracle.is_friend("mallory", "mallory")
    assert await oracle.is_community_member("carol", "zen-circle")
    assert not await oracle.is_community_member("bob", "zen-circle")


async def test_sql_oracle_failure_hides_event():
    def broken_factory():
        raise OperationalError("SELECT", {}, Exception("no such table"))

    oracle = SqlRelationshipOracle(broken_factory)
    with pytest.raises(OracleUnavailable):
        await oracle.is_friend("bob", "alice")

    result = await resolve(occurrences_of(FRIENDS_WEEKLY), "bob", oracle)
    assert result.items == []
    assert result.undetermined_event_ids == ["evt_weekly"]
