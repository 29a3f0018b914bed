"""Tests for ConnectionRegistry: admission, join checks and teardown."""
import pytest
from conftest import FakeSocket, eventually

from facechat.auth.schemas import Identity
from facechat.errors import AuthError, AuthFailure, NotAMember


@pytest.fixture
def alice(make_user):
    return make_user("alice")


@pytest.fixture
def bob(make_user):
    return make_user("bob")


@pytest.fixture
def room(store, alice, bob):
    return store.create_room("R1", alice.id, participant_ids=[bob.id])


def identity_for(user) -> Identity:
    return Identity(userId=user.id, username=user.username)


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_valid_credential(self, registry, tokens, alice):
        identity = registry.authenticate(tokens.issue(identity_for(alice)))
        assert identity.userId == alice.id
        assert registry.connection_count == 0

    @pytest.mark.parametrize(
        "credential, failure",
        [
            (None, AuthFailure.NO_CREDENTIAL),
            ("", AuthFailure.NO_CREDENTIAL),
            ("garbage", AuthFailure.INVALID_CREDENTIAL),
        ],
    )
    @pytest.mark.asyncio
    async def test_rejections_create_no_state(self, registry, credential, failure):
        with pytest.raises(AuthError) as exc:
            registry.authenticate(credential)
        assert exc.value.failure == failure
        assert registry.connection_count == 0


class TestJoinLeave:
    @pytest.mark.asyncio
    async def test_member_can_join(self, registry, broadcaster, room, bob):
        conn = registry.admit(FakeSocket(), identity_for(bob))
        joined = registry.join(conn.connection_id, room.id)
        assert joined.id == room.id
        assert room.id in conn.rooms
        assert broadcaster.members(room.id) == [conn]

    @pytest.mark.asyncio
    async def test_non_member_is_refused(self, registry, broadcaster, room, make_user):
        carol = make_user("carol")
        conn = registry.admit(FakeSocket(), identity_for(carol))
        with pytest.raises(NotAMember):
            registry.join(conn.connection_id, room.id)
        with pytest.raises(NotAMember):
            registry.join(conn.connection_id, "no-such-room")
        assert broadcaster.room_size(room.id) == 0

    @pytest.mark.asyncio
    async def test_removed_member_cannot_rejoin(self, registry, store, room, alice, bob):
        conn = registry.admit(FakeSocket(), identity_for(bob))
        registry.join(conn.connection_id, room.id)
        store.remove_participant(room.id, bob.id, by_user_id=alice.id)
        registry.leave(conn.connection_id, room.id)
        with pytest.raises(NotAMember):
            registry.join(conn.connection_id, room.id)

    @pytest.mark.asyncio
    async def test_leave_is_idempotent(self, registry, room, bob):
        conn = registry.admit(FakeSocket(), identity_for(bob))
        registry.join(conn.connection_id, room.id)
        assert registry.leave(conn.connection_id, room.id) is True
        assert registry.leave(conn.connection_id, room.id) is False
        assert registry.leave("unknown", room.id) is False

    @pytest.mark.asyncio
    async def test_revoke_notifies_removed_user(self, registry, broadcaster, room, alice, bob):
        socket = FakeSocket()
        bob_conn = registry.admit(socket, identity_for(bob))
        alice_conn = registry.admit(FakeSocket(), identity_for(alice))
        registry.join(bob_conn.connection_id, room.id)
        registry.join(alice_conn.connection_id, room.id)

        assert registry.revoke(room.id, bob.id) == 1
        await eventually(lambda: socket.events("error"))

        assert [c.user_id for c in broadcaster.members(room.id)] == [alice.id]
        assert socket.events("error") == [{"type": "error", "reason": "removed", "roomId": room.id}]


class TestDelivery:
    @pytest.mark.asyncio
    async def test_events_are_sent_in_enqueue_order(self, registry, bob):
        socket = FakeSocket()
        conn = registry.admit(socket, identity_for(bob))
        for i in range(5):
            registry.send(conn, {"type": "n", "i": i})
        await eventually(lambda: len(socket.sent) == 5)
        assert [e["i"] for e in socket.sent] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_failed_send_disconnects(self, registry, broadcaster, room, bob):
        conn = registry.admit(FakeSocket(fail=True), identity_for(bob))
        registry.join(conn.connection_id, room.id)
        registry.send(conn, {"type": "hello"})
        await eventually(lambda: registry.get(conn.connection_id) is None)
        assert broadcaster.room_size(room.id) == 0

    @pytest.mark.asyncio
    async def test_slow_send_times_out(self, registry, broadcaster, room, alice, bob):
        slow = registry.admit(FakeSocket(delay=5), identity_for(bob))
        healthy_socket = FakeSocket()
        healthy = registry.admit(healthy_socket, identity_for(alice))
        registry.join(slow.connection_id, room.id)
        registry.join(healthy.connection_id, room.id)

        broadcaster.broadcast(room.id, {"type": "tick"})
        await eventually(lambda: healthy_socket.events("tick"))
        assert healthy_socket.events("tick") == [{"type": "tick"}]

        await eventually(lambda: slow.websocket.closed is not None)
        assert registry.get(slow.connection_id) is None
        assert slow.websocket.closed[1] == "send-timeout"
        assert registry.get(healthy.connection_id) is healthy

    @pytest.mark.asyncio
    async def test_full_queue_disconnects(self, registry, broadcaster, room, bob):
        socket = FakeSocket(delay=5)
        conn = registry.admit(socket, identity_for(bob))
        registry.join(conn.connection_id, room.id)
        for i in range(20):
            broadcaster.broadcast(room.id, {"type": "flood", "i": i})
        await eventually(lambda: socket.closed is not None)
        assert registry.get(conn.connection_id) is None
        assert socket.closed[1] == "outbound-queue-full"


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_cleans_every_room(self, registry, store, broadcaster, typing, alice, bob):
        r1 = store.create_room("R1", alice.id, participant_ids=[bob.id])
        r2 = store.create_room("R2", alice.id, participant_ids=[bob.id])
        conn = registry.admit(FakeSocket(), identity_for(bob))
        registry.join(conn.connection_id, r1.id)
        registry.join(conn.connection_id, r2.id)
        typing.set_typing(conn, r1.id, True)

        assert await registry.disconnect(conn.connection_id) is True
        assert await registry.disconnect(conn.connection_id) is False

        assert broadcaster.room_size(r1.id) == 0
        assert broadcaster.room_size(r2.id) == 0
        assert typing.is_typing(r1.id, bob.id) is False
        assert conn.closed is True
        assert registry.connection_count == 0

    @pytest.mark.asyncio
    async def test_stop_closes_everything(self, registry, bob):
        sockets = [FakeSocket(), FakeSocket()]
        for s in sockets:
            registry.admit(s, identity_for(bob))
        await registry.stop()
        assert registry.connection_count == 0
        assert [s.closed for s in sockets] == [(1001, "server-shutdown")] * 2
