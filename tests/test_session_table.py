"""
Unit tests for SessionTable and SocketRegistry
==============================================

Test coverage:
- Session creation with generated and caller-supplied ids
- Append-only participant membership
- Attach/detach bookkeeping and the reverse index
- Exact-pair lookup
- Registry binding, replacement and conditional unbinding
"""

from unittest.mock import Mock

from chat_relay.api.websocket.lifecycle import Session, SessionTable, SocketRegistry


class TestSessionTableCreation:
    """Test session creation"""

    def test_create_generates_opaque_id(self):
        """Test that create assigns a fresh id when none is given"""
        table = SessionTable()

        first = table.create(participants=("alice", "bob"))
        second = table.create(participants=("alice", "carol"))

        assert first.session_id != second.session_id
        assert len(first.session_id) == 32
        assert len(table) == 2

    def test_ensure_creates_unknown_session(self):
        """Test that ensure creates a session under the caller's id"""
        table = SessionTable()

        session = table.ensure("S1", ("alice", None))

        assert session.session_id == "S1"
        assert session.participants == ["alice"]
        assert session.sockets == set()

    def test_created_at_is_timezone_aware(self):
        """Test that session creation time is an aware UTC instant"""
        table = SessionTable()

        session = table.create(participants=("alice", "bob"))

        assert session.created_at.tzinfo is not None
        assert session.created_at.utcoffset().total_seconds() == 0

    def test_ensure_appends_missing_participants(self):
        """Test that membership only grows"""
        table = SessionTable()
        table.ensure("S1", ("alice", "bob"))

        session = table.ensure("S1", ("carol", "alice"))

        assert session.participants == ["alice", "bob", "carol"]

    def test_creation_is_logged(self):
        """Test that session creation is logged when a logger is present"""
        logger = Mock()
        table = SessionTable(logger=logger)

        table.create(participants=("alice", "bob"))

        logger.debug.assert_called_once()
        assert logger.debug.call_args[0][0] == "session_table.session_created"


class TestSessionTableLookup:
    """Test exact-pair lookup"""

    def test_find_by_participants_in_either_order(self):
        """Test that lookup ignores argument order"""
        table = SessionTable()
        session = table.create(participants=("alice", "bob"))

        assert table.find_by_participants("alice", "bob") is session
        assert table.find_by_participants("bob", "alice") is session

    def test_find_by_participants_requires_exact_set(self):
        """Test that supersets and subsets do not match"""
        table = SessionTable()
        table.ensure("S1", ("alice", "bob"))
        table.ensure("S1", ("carol",))
        table.ensure("S2", ("alice",))

        assert table.find_by_participants("alice", "bob") is None

    def test_peer_of_returns_first_other_participant(self):
        """Test recipient resolution helper"""
        session = Session(session_id="S", participants=["alice", "bob"])

        assert session.peer_of("alice") == "bob"
        assert session.peer_of("bob") == "alice"
        assert Session(session_id="S", participants=["alice"]).peer_of("alice") is None


class TestSessionTableSockets:
    """Test attach/detach bookkeeping"""

    def test_attach_and_detach_everywhere(self):
        """Test that detach removes a connection from all its sessions"""
        table = SessionTable()
        table.ensure("S1", ("alice",))
        table.ensure("S2", ("alice",))
        table.attach("S1", "conn_a")
        table.attach("S2", "conn_a")
        table.attach("S1", "conn_b")

        removed = table.detach_everywhere("conn_a")

        assert removed == {"S1", "S2"}
        assert table.get("S1").sockets == {"conn_b"}
        assert table.get("S2").sockets == set()
        assert table.sessions_of("conn_a") == set()

    def test_detach_unknown_connection_is_noop(self):
        """Test detaching a connection that was never attached"""
        table = SessionTable()

        assert table.detach_everywhere("ghost") == set()
        assert table.get_stats()["total_evictions"] == 0

    def test_sessions_survive_losing_all_sockets(self):
        """Test that an empty socket set does not remove the session"""
        table = SessionTable()
        table.ensure("S1", ("alice",))
        table.attach("S1", "conn_a")

        table.detach_everywhere("conn_a")

        assert table.get("S1") is not None
        assert table.get("S1").participants == ["alice"]

    def test_to_dict(self):
        """Test session serialization for diagnostics"""
        session = Session(session_id="S", participants=["alice"], sockets={"c2", "c1"})

        data = session.to_dict()

        assert data["session_id"] == "S"
        assert data["participants"] == ["alice"]
        assert data["sockets"] == ["c1", "c2"]
        assert data["created_at"].endswith("Z")


class TestSocketRegistry:
    """Test user to connection bindings"""

    def test_bind_returns_replaced_connection(self):
        """Test that rebinding reports the previous handle"""
        registry = SocketRegistry()

        assert registry.bind("alice", "conn_1") is None
        assert registry.bind("alice", "conn_2") == "conn_1"
        assert registry.lookup("alice") == "conn_2"
        assert len(registry) == 1

    def test_rebinding_same_connection_reports_nothing(self):
        """Test idempotent binding"""
        registry = SocketRegistry()
        registry.bind("alice", "conn_1")

        assert registry.bind("alice", "conn_1") is None

    def test_unbind_only_if_current(self):
        """Test that an orphaned handle cannot remove the newer binding"""
        registry = SocketRegistry()
        registry.bind("alice", "conn_1")
        registry.bind("alice", "conn_2")

        assert registry.unbind_if_current("alice", "conn_1") is False
        assert registry.lookup("alice") == "conn_2"

        assert registry.unbind_if_current("alice", "conn_2") is True
        assert registry.lookup("alice") is None
        assert len(registry) == 0

    def test_lookup_without_user(self):
        """Test lookup of a missing or empty user id"""
        registry = SocketRegistry()

        assert registry.lookup(None) is None
        assert registry.lookup("nobody") is None
