"""
Unit tests for RelayState
=========================
Tests the shared state service without any transport.

Test coverage:
- Join semantics (creation, participants, single socket per user)
- Register semantics and the registry's "latest wins" rule
- Relay planning (recipient, targets, notification target, NotJoined)
- Eviction of closed connections
- Session bootstrap validation and idempotency
- Concurrent bootstrap of the same pair
"""

import asyncio
import random

import pytest

from chat_relay.api.websocket.lifecycle import RelayState
from chat_relay.core.exceptions import InvalidArgument, NotJoined


class TestRelayStateJoin:
    """Test join handling"""

    @pytest.mark.asyncio
    async def test_join_creates_session_with_both_participants(self):
        """Test join on an unknown session id"""
        state = RelayState()

        result = await state.join("c1", "alice", "S", "bob")

        session = await state.get_session("S")
        assert result.created is True
        assert session.participants == ["alice", "bob"]
        assert session.sockets == {"c1"}

    @pytest.mark.asyncio
    async def test_join_ignores_other_user_equal_to_self(self):
        """Test that otherUserId is only added when distinct"""
        state = RelayState()

        await state.join("c1", "alice", "S", "alice")

        session = await state.get_session("S")
        assert session.participants == ["alice"]

    @pytest.mark.asyncio
    async def test_join_existing_session_appends_participant(self):
        """Test that membership grows without validation"""
        state = RelayState()
        await state.join("c1", "alice", "S", "bob")

        result = await state.join("c2", "carol", "S")

        session = await state.get_session("S")
        assert result.created is False
        assert session.participants == ["alice", "bob", "carol"]
        assert session.sockets == {"c1", "c2"}

    @pytest.mark.asyncio
    async def test_join_moves_connection_between_sessions(self):
        """Test that a connection is attached to one session at a time"""
        state = RelayState()
        await state.join("c1", "alice", "S1")

        await state.join("c1", "alice", "S2")

        assert (await state.get_session("S1")).sockets == set()
        assert (await state.get_session("S2")).sockets == {"c1"}

    @pytest.mark.asyncio
    async def test_rejoin_evicts_previous_socket_of_same_user(self):
        """Test the single-socket-per-user invariant across sessions"""
        state = RelayState()
        await state.join("old", "alice", "S1", "bob")
        moved = await state.join("old_other", "alice", "S2")

        result = await state.join("new", "alice", "S1")

        assert moved.evicted_client_ids == ("old",)
        assert result.evicted_client_ids == ("old_other",)
        assert (await state.get_session("S1")).sockets == {"new"}
        assert (await state.get_session("S2")).sockets == set()
        assert await state.registered_client("alice") == "new"

    @pytest.mark.asyncio
    async def test_join_requires_user_and_session(self):
        """Test that missing ids are rejected before touching state"""
        state = RelayState()

        with pytest.raises(InvalidArgument):
            await state.join("c1", "", "S")
        with pytest.raises(InvalidArgument):
            await state.join("c1", "alice", "")

        assert state.get_stats()["sessions"] == 0


class TestRelayStateRegistry:
    """Test register and the registry invariant"""

    @pytest.mark.asyncio
    async def test_register_replaces_previous_binding(self):
        """Test that the latest register wins"""
        state = RelayState()

        assert await state.register("c1", "bob") is None
        assert await state.register("c2", "bob") == "c1"
        assert await state.registered_client("bob") == "c2"

    @pytest.mark.asyncio
    async def test_registry_holds_most_recent_handle(self):
        """Test that after any sequence of join/register the registry points at the latest handle"""
        rng = random.Random(7)
        state = RelayState()
        latest = {}

        for step in range(200):
            user = rng.choice(["alice", "bob", "carol"])
            client_id = f"c{rng.randint(0, 9)}"
            if rng.random() < 0.5:
                await state.register(client_id, user)
            else:
                await state.join(client_id, user, rng.choice(["S1", "S2"]))
            # A connection that takes a new identity stops being the handle of the old one
            latest = {u: c for u, c in latest.items() if c != client_id}
            latest[user] = client_id

        for user in ("alice", "bob", "carol"):
            assert await state.registered_client(user) == latest.get(user)

        # No user has more than one attached socket
        for session_id in ("S1", "S2"):
            session = await state.get_session(session_id)
            if session is None:
                continue
            owners = [(await state.get_tag(client_id)).user_id for client_id in session.sockets]
            assert len(owners) == len(set(owners))


class TestRelayStatePlan:
    """Test relay planning"""

    @pytest.mark.asyncio
    async def test_plan_requires_join(self):
        """Test that unjoined connections cannot relay"""
        state = RelayState()
        await state.register("c1", "alice")

        with pytest.raises(NotJoined):
            await state.plan_relay("c1")
        with pytest.raises(NotJoined):
            await state.plan_relay("unknown")

    @pytest.mark.asyncio
    async def test_plan_skips_notification_for_attached_recipient(self):
        """Test that a recipient already in the session is not notified"""
        state = RelayState()
        await state.join("ca", "alice", "S", "bob")
        await state.join("cb", "bob", "S")

        plan = await state.plan_relay("ca")

        assert plan.sender == "alice"
        assert plan.recipient == "bob"
        assert set(plan.targets) == {"ca", "cb"}
        assert plan.notify_client_id is None
        assert plan.timestamp.tzinfo is not None

    @pytest.mark.asyncio
    async def test_plan_targets_registered_recipient_outside_session(self):
        """Test out-of-session notification target"""
        state = RelayState()
        await state.register("cb", "bob")
        await state.join("ca", "alice", "S", "bob")

        plan = await state.plan_relay("ca")

        assert plan.targets == ("ca",)
        assert plan.notify_client_id == "cb"

    @pytest.mark.asyncio
    async def test_plan_without_other_participant(self):
        """Test that a lone participant has no recipient"""
        state = RelayState()
        await state.join("ca", "alice", "S")

        plan = await state.plan_relay("ca")

        assert plan.recipient is None
        assert plan.notify_client_id is None


class TestRelayStateEvict:
    """Test connection eviction"""

    @pytest.mark.asyncio
    async def test_evict_removes_sockets_and_registration(self):
        """Test that eviction clears both tables"""
        state = RelayState()
        await state.join("ca", "alice", "S", "bob")

        result = await state.evict("ca")

        assert result.sessions == ("S",)
        assert result.unregistered_users == ("alice",)
        assert (await state.get_session("S")).sockets == set()
        assert await state.registered_client("alice") is None
        assert await state.get_tag("ca") is None

    @pytest.mark.asyncio
    async def test_evict_keeps_newer_registration(self):
        """Test that an orphaned handle does not unregister its replacement"""
        state = RelayState()
        await state.register("old", "bob")
        await state.register("new", "bob")

        result = await state.evict("old")

        assert result.unregistered_users == ()
        assert await state.registered_client("bob") == "new"

    @pytest.mark.asyncio
    async def test_reregister_under_new_user_releases_old_binding(self):
        """Test that a connection registering as a second user stops receiving the first user's notifications"""
        state = RelayState()
        await state.register("c1", "alice")
        await state.register("c1", "bob")

        assert await state.registered_client("alice") is None
        assert await state.registered_client("bob") == "c1"

        result = await state.evict("c1")

        assert result.unregistered_users == ("bob",)
        assert await state.registered_client("alice") is None
        assert await state.registered_client("bob") is None

    @pytest.mark.asyncio
    async def test_join_under_new_user_releases_registered_binding(self):
        """Test that joining as another user drops the earlier registration of the same connection"""
        state = RelayState()
        await state.register("c1", "alice")
        await state.join("c1", "bob", "S")

        assert await state.registered_client("alice") is None

        await state.evict("c1")

        assert await state.registered_client("alice") is None
        assert await state.registered_client("bob") is None

    @pytest.mark.asyncio
    async def test_identity_change_keeps_other_connections_binding(self):
        """Test that releasing an old identity never unbinds a newer handle of that user"""
        state = RelayState()
        await state.register("c1", "alice")
        await state.register("c2", "alice")
        await state.register("c1", "bob")

        assert await state.registered_client("alice") == "c2"
        assert await state.registered_client("bob") == "c1"

    @pytest.mark.asyncio
    async def test_evict_is_idempotent(self):
        """Test evicting twice"""
        state = RelayState()
        await state.join("ca", "alice", "S")

        await state.evict("ca")
        result = await state.evict("ca")

        assert result.sessions == ()
        assert result.unregistered_users == ()


class TestRelayStateBootstrap:
    """Test createOrGetSession"""

    @pytest.mark.asyncio
    async def test_bootstrap_is_idempotent_in_either_order(self):
        """Test that both argument orders return the same id"""
        state = RelayState()

        first, created = await state.create_or_get_session("alice", "bob")
        second, created_again = await state.create_or_get_session("bob", "alice")

        assert first == second
        assert created is True
        assert created_again is False
        session = await state.get_session(first)
        assert set(session.participants) == {"alice", "bob"}
        assert session.sockets == set()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_1, user_2", [
        (None, "bob"),
        ("alice", None),
        ("", "bob"),
        ("   ", "bob"),
        ("alice", "alice"),
        (42, "bob"),
    ])
    async def test_bootstrap_rejects_invalid_pairs(self, user_1, user_2):
        """Test InvalidArgument for missing, blank, non-string or equal ids"""
        state = RelayState()

        with pytest.raises(InvalidArgument):
            await state.create_or_get_session(user_1, user_2)
        assert state.get_stats()["sessions"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_bootstrap_yields_single_session(self):
        """Test that racing bootstraps of one pair agree"""
        state = RelayState()

        results = await asyncio.gather(*(
            state.create_or_get_session("alice", "bob") if i % 2 else state.create_or_get_session("bob", "alice")
            for i in range(20)
        ))

        assert len({session_id for session_id, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1
