import asyncio
import unittest

from mixroom.address import generate_address
from mixroom.config import RoomConfig
from mixroom.envelope import Envelope, EnvelopeType, decode_envelope, encode_envelope, unpack_welcome
from mixroom.log import EventKind
from mixroom.session import JoinError, Role, RoomSession, SessionError, SessionState
from mixroom.transport import LoopbackNetwork, TransportError

FAST = RoomConfig(
    heartbeat_interval_s=0.1,
    timeout_factor=5,
    reorder_timeout_s=0.3,
    join_timeout_s=3.0,
    join_retry_interval_s=0.2,
    leave_timeout_s=0.5,
)


async def wait_until(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _texts(events, kind=EventKind.CHAT):
    return [event.text for event in events if event.kind is kind]


def _names(events, kind):
    return [event.username for event in events if event.kind is kind]


class FilteringTransport:
    """Wraps a transport and discards inbound envelopes matching ``drop``."""

    def __init__(self, inner, drop):
        self.inner = inner
        self.drop = drop
        self.dropped = []

    def self_address(self):
        return self.inner.self_address()

    async def send(self, address, data):
        await self.inner.send(address, data)

    async def receive(self):
        while True:
            sender, data = await self.inner.receive()
            envelope = decode_envelope(data)
            if self.drop(envelope):
                self.dropped.append(envelope)
                continue
            return sender, data

    async def close(self):
        await self.inner.close()


class BrokenReceiveTransport(FilteringTransport):
    def __init__(self, inner):
        super().__init__(inner, lambda envelope: False)
        self.broken = False

    async def receive(self):
        packet = await super().receive()
        if self.broken:
            raise AttributeError("'list' object has no attribute 'get'")
        return packet


class RoomSessionTestCase(unittest.IsolatedAsyncioTestCase):
    network_options: dict = {}

    async def asyncSetUp(self):
        self.network = LoopbackNetwork(seed=1, **self.network_options)
        self.sessions = []
        self.transports = []

    async def asyncTearDown(self):
        for session in reversed(self.sessions):
            if session.state is not SessionState.CLOSED and session.state is not SessionState.IDLE:
                await session.leave()
        for transport in self.transports:
            await transport.close()

    def _attach(self):
        transport = self.network.attach()
        self.transports.append(transport)
        return transport

    def _session(self, config: RoomConfig = FAST):
        session = RoomSession(self._attach(), config)
        events = []
        session.events.subscribe(events.append)
        self.sessions.append(session)
        return session, events

    async def _room(self, *usernames: str, config: RoomConfig = FAST):
        host, host_events = self._session(config)
        room = await host.create()
        members = []
        for username in usernames:
            session, events = self._session(config)
            await session.join(room, username)
            members.append((session, events))
        return host, host_events, members


class RoomLifecycleTests(RoomSessionTestCase):
    async def test_create_and_join(self):
        host, host_events, [(alice, alice_events)] = await self._room("alice")

        self.assertIs(host.role, Role.HOST)
        self.assertIs(alice.role, Role.PARTICIPANT)
        self.assertIs(alice.state, SessionState.ACTIVE)
        self.assertEqual(alice.members.usernames(), ["alice"])
        self.assertEqual(host.members.usernames(), ["alice"])
        self.assertEqual(_names(host_events, EventKind.JOIN), ["alice"])
        self.assertEqual(alice.room_seq, 1)

        bob, _ = self._session()
        await bob.join(host.room_address, "bob")

        await wait_until(lambda: "bob" in _names(alice_events, EventKind.JOIN))
        self.assertEqual(alice.members.usernames(), ["alice", "bob"])
        self.assertEqual(bob.members.usernames(), ["alice", "bob"])

    async def test_chat_reaches_everyone_but_author(self):
        host, host_events, [(alice, alice_events), (bob, bob_events), (carol, carol_events)] = await self._room(
            "alice", "bob", "carol"
        )

        await alice.send_chat("hello")

        await wait_until(lambda: _texts(bob_events) == ["hello"] and _texts(carol_events) == ["hello"])
        await wait_until(lambda: alice.room_seq == host.room_seq)
        self.assertEqual(_texts(host_events), ["hello"])
        self.assertEqual(_texts(alice_events), [])
        chat = [event for event in bob_events if event.kind is EventKind.CHAT][0]
        self.assertEqual(chat.username, "alice")
        self.assertFalse(chat.forced)

    async def test_history_is_replayed_to_late_joiner(self):
        host, _, [(alice, _)] = await self._room("alice")
        await alice.send_chat("one")
        await alice.send_chat("two")
        await wait_until(lambda: len(host.router.history) == 2)

        bob, bob_events = self._session()
        await bob.join(host.room_address, "bob")

        replayed = [event for event in bob_events if event.kind is EventKind.CHAT]
        self.assertEqual([event.text for event in replayed], ["one", "two"])
        self.assertTrue(all(event.replayed for event in replayed))
        self.assertEqual(len(bob.welcome.history), 2)

    async def test_leave_is_applied_immediately(self):
        host, host_events, [(alice, _), (bob, bob_events)] = await self._room("alice", "bob")

        await alice.leave()

        self.assertEqual(alice.close_reason, "left")
        await wait_until(lambda: "alice" not in host.members.usernames())
        await wait_until(lambda: "alice" in _names(bob_events, EventKind.LEAVE))
        leave = [event for event in host_events if event.kind is EventKind.LEAVE][0]
        self.assertEqual(leave.reason, "left")
        self.assertEqual(bob.members.usernames(), ["bob"])

    async def test_host_leave_closes_room_for_participants(self):
        host, _, [(alice, alice_events)] = await self._room("alice")

        await host.leave()
        await asyncio.wait_for(alice.wait_closed(), 3)

        self.assertEqual(host.close_reason, "left")
        self.assertEqual(alice.close_reason, "room_closed")
        closed = [event for event in alice_events if event.kind is EventKind.CLOSED]
        self.assertEqual([event.reason for event in closed], ["room_closed"])

    async def test_api_misuse(self):
        host, _, [(alice, _)] = await self._room("alice")

        with self.assertRaises(SessionError):
            await host.send_chat("hosts relay")
        with self.assertRaises(SessionError):
            await host.create()
        with self.assertRaises(ValueError):
            await alice.send_chat("   ")
        with self.assertRaises(ValueError):
            await alice.send_chat("x" * (FAST.max_chat_bytes + 1))

        idle, _ = self._session()
        with self.assertRaises(SessionError):
            await idle.send_chat("too early")
        with self.assertRaises(ValueError):
            await idle.join(host.room_address, " spaced ")

    async def test_transport_failure_closes_session(self):
        _, _, [(alice, alice_events)] = await self._room("alice")

        await alice.transport.close()
        await asyncio.wait_for(alice.wait_closed(), 3)

        self.assertEqual(alice.close_reason, "transport_lost")
        self.assertIsNotNone(alice.failure)
        self.assertEqual(alice_events[-1].reason, "transport_lost")

    async def test_unexpected_receive_error_closes_session(self):
        host, _, [(alice, _)] = await self._room("alice")
        transport = BrokenReceiveTransport(self._attach())
        bob = RoomSession(transport, FAST)
        self.sessions.append(bob)
        await bob.join(host.room_address, "bob")

        transport.broken = True
        await alice.send_chat("trigger")
        await asyncio.wait_for(bob.wait_closed(), 3)

        self.assertEqual(bob.close_reason, "transport_lost")
        self.assertIsInstance(bob.failure, TransportError)


class JoinFailureTests(RoomSessionTestCase):
    async def test_username_conflict_is_rejected(self):
        host, _, _ = await self._room("alice")
        bob, _ = self._session()

        with self.assertRaises(JoinError) as ctx:
            await bob.join(host.room_address, "alice")

        self.assertEqual(ctx.exception.reason, JoinError.REJECTED)
        self.assertEqual(ctx.exception.code, "username_conflict")
        self.assertIs(bob.state, SessionState.CLOSED)
        self.assertEqual(host.members.usernames(), ["alice"])

    async def test_invalid_username_is_rejected_by_host(self):
        host, _, _ = await self._room()
        raw = self._attach()
        join = Envelope(
            type=EnvelopeType.JOIN,
            sender=raw.self_address(),
            sequence=1,
            timestamp_ms=0,
            username="bad\x07name",
        )

        await raw.send(host.room_address, encode_envelope(join))
        sender, data = await asyncio.wait_for(raw.receive(), 3)

        reply = decode_envelope(data)
        self.assertEqual(sender, host.room_address)
        self.assertEqual(reply.type, EnvelopeType.WELCOME)
        self.assertEqual(unpack_welcome(reply.payload).error.code, "invalid_username")
        self.assertEqual(len(host.members), 0)

    async def test_join_times_out_and_retransmits_identical_join(self):
        config = RoomConfig(join_timeout_s=0.5, join_retry_interval_s=0.1)
        nowhere = generate_address()
        session, _ = self._session(config)

        with self.assertRaises(JoinError) as ctx:
            await session.join(nowhere, "alice")

        self.assertEqual(ctx.exception.reason, JoinError.TIMEOUT)
        self.assertIs(session.state, SessionState.CLOSED)
        joins = [data for _, to, data in self.network.sent if to == nowhere]
        self.assertGreaterEqual(len(joins), 2)
        self.assertEqual(len(set(joins)), 1)


class DuplicatedDeliveryTests(RoomSessionTestCase):
    network_options = {"duplicate_rate": 1.0}

    async def test_duplicates_are_shown_once(self):
        host, host_events, [(alice, _), (bob, bob_events)] = await self._room("alice", "bob")

        await alice.send_chat("hello")
        await alice.send_chat("again")

        await wait_until(lambda: _texts(bob_events) == ["hello", "again"])
        await asyncio.sleep(0.1)
        self.assertEqual(_texts(bob_events), ["hello", "again"])
        self.assertEqual(_texts(host_events), ["hello", "again"])
        self.assertEqual(_names(bob_events, EventKind.JOIN), [])
        self.assertEqual(host.members.usernames(), ["alice", "bob"])
        self.assertEqual(len(host.router.history), 2)


class ReorderedDeliveryTests(RoomSessionTestCase):
    network_options = {"max_delay_s": 0.03}

    async def test_participants_converge_on_host_order(self):
        host, host_events, [(alice, _), (bob, bob_events), (carol, carol_events)] = await self._room(
            "alice", "bob", "carol"
        )

        for i in range(10):
            await alice.send_chat(f"a{i}")
            await bob.send_chat(f"b{i}")

        await wait_until(lambda: len(_texts(host_events)) == 20)
        await wait_until(lambda: carol.room_seq == host.room_seq)
        self.assertEqual(_texts(carol_events), _texts(host_events))
        self.assertEqual(
            [text for text in _texts(host_events) if text.startswith("a")],
            [text for text in _texts(bob_events)],
        )
        seqs = [event.room_seq for event in carol_events if event.room_seq is not None]
        self.assertEqual(seqs, sorted(seqs))


class LostDeliveryTests(RoomSessionTestCase):
    async def test_gap_is_skipped_after_reorder_timeout(self):
        host, _, [(alice, _)] = await self._room("alice")
        transport = FilteringTransport(
            self._attach(), lambda envelope: envelope.type is EnvelopeType.CHAT and envelope.text == "lost"
        )
        bob = RoomSession(transport, FAST)
        bob_events = []
        bob.events.subscribe(bob_events.append)
        self.sessions.append(bob)
        await bob.join(host.room_address, "bob")

        loop = asyncio.get_running_loop()
        await alice.send_chat("lost")
        await alice.send_chat("kept")
        await wait_until(lambda: len(host.router.history) == 2)
        sent_at = loop.time()
        await wait_until(lambda: _texts(bob_events) == ["kept"], timeout=FAST.reorder_timeout_s + 1)
        waited = loop.time() - sent_at

        [kept] = [event for event in bob_events if event.kind is EventKind.CHAT]
        [lost] = transport.dropped
        self.assertTrue(kept.forced)
        self.assertEqual(kept.room_seq, lost.room_seq + 1)
        self.assertLess(waited, FAST.reorder_timeout_s + 1)
        self.assertEqual(bob.room_seq, host.room_seq)
        self.assertIs(bob.state, SessionState.ACTIVE)


class PresenceTests(RoomSessionTestCase):
    async def test_silent_participant_is_evicted_then_notified(self):
        host, host_events, [(alice, _), (bob, bob_events)] = await self._room("alice", "bob")

        self.network.mute(alice.address)
        await wait_until(lambda: "alice" not in host.members.usernames(), timeout=5)
        await wait_until(lambda: "alice" in _names(bob_events, EventKind.LEAVE))

        leave = [event for event in host_events if event.kind is EventKind.LEAVE][0]
        self.assertEqual(leave.reason, "timeout")
        self.assertEqual(host.members.usernames(), ["bob"])
        self.assertEqual(bob.members.usernames(), ["bob"])

        self.network.unmute(alice.address)
        await asyncio.wait_for(alice.wait_closed(), 3)
        self.assertEqual(alice.close_reason, "evicted")

    async def test_heartbeats_keep_idle_participant_alive(self):
        host, _, [(alice, _)] = await self._room("alice")

        await asyncio.sleep(FAST.presence.timeout_ms / 1000 * 2)

        self.assertEqual(host.members.usernames(), ["alice"])
        self.assertIs(alice.state, SessionState.ACTIVE)


class HostFilteringTests(RoomSessionTestCase):
    async def test_spoofed_sender_is_ignored(self):
        host, _, [(alice, _)] = await self._room("alice")
        raw = self._attach()
        forged = Envelope(type=EnvelopeType.CHAT, sender=alice.address, sequence=99, timestamp_ms=0, payload=b"fake")

        await raw.send(host.room_address, encode_envelope(forged))
        await raw.send(host.room_address, b"\x00garbage")
        await asyncio.sleep(0.05)

        self.assertEqual(len(host.router.history), 0)
        self.assertIs(host.state, SessionState.ACTIVE)

    async def test_pathological_packets_do_not_close_room(self):
        host, _, [(alice, _), (bob, bob_events)] = await self._room("alice", "bob")
        raw = self._attach()

        await raw.send(host.room_address, b"[" * 50000)
        await raw.send(host.room_address, b'{"v":1,"seq":' + b"9" * 5000 + b"}")
        await raw.send(bob.address, b"[" * 50000)
        await asyncio.sleep(0.05)

        self.assertIs(host.state, SessionState.ACTIVE)
        self.assertIs(bob.state, SessionState.ACTIVE)
        await alice.send_chat("still here")
        await wait_until(lambda: _texts(bob_events) == ["still here"])

    async def test_chat_from_stranger_gets_eviction_notice(self):
        host, _, _ = await self._room()
        raw = self._attach()
        chat = Envelope(type=EnvelopeType.CHAT, sender=raw.self_address(), sequence=1, timestamp_ms=0, payload=b"hi")

        await raw.send(host.room_address, encode_envelope(chat))
        _, data = await asyncio.wait_for(raw.receive(), 3)

        notice = decode_envelope(data)
        self.assertEqual(notice.type, EnvelopeType.LEAVE)
        self.assertEqual(notice.sender, raw.self_address())
        self.assertIsNone(notice.room_seq)

    async def test_participant_ignores_packets_not_from_room(self):
        _, _, [(alice, alice_events)] = await self._room("alice")
        raw = self._attach()
        stamped = Envelope(
            type=EnvelopeType.CHAT,
            sender=raw.self_address(),
            sequence=1,
            timestamp_ms=0,
            username="mallory",
            payload=b"psst",
            room_seq=2,
        )

        await raw.send(alice.address, encode_envelope(stamped))
        await asyncio.sleep(0.05)

        self.assertEqual(_texts(alice_events), [])
        self.assertEqual(alice.room_seq, 1)


if __name__ == "__main__":
    unittest.main()
