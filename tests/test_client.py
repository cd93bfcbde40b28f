import socket
import threading
import time

import pytest

from relaychat.client import (
    ChatSession,
    NoActiveChat,
    chat_loop,
    describe,
    open_message,
    seal_message,
)
from relaychat.common.framing import FrameReader
from relaychat.common.protocol import (
    ClientList,
    DeliveryError,
    IncomingMessage,
    RegisterAck,
    ServerMessage,
    StartChatInfo,
    TargetNotFound,
)
from relaychat.common.utils import fingerprint_public_key, parse_host_port
from relaychat.crypto.rsa import KeyPair, PrivateKey, PublicKey, generate_key_pair
from relaychat.server import RelayServer

ALICE_KEYS = KeyPair(public=PublicKey(e=7, n=3233), private=PrivateKey(d=1783, n=3233))


@pytest.fixture
def relay():
    server = RelayServer("127.0.0.1", 0)
    server.start()
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    yield server
    server.shutdown()
    t.join(5)


def connect(relay, name, keys=None):
    session = ChatSession(name=name, keys=keys, timeout=5)
    session.connect("127.0.0.1", relay.port)
    session.register()
    ack = session.receive()
    assert isinstance(ack, RegisterAck)
    return session


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_seal_and_open():
    symbols = seal_message("hi", ALICE_KEYS.public)
    assert len(symbols) == 4     # two codewords per character
    assert open_message(symbols, ALICE_KEYS.private) == ("hi", 0)


def test_seal_with_noise_is_repaired():
    symbols = seal_message("noisy line", ALICE_KEYS.public, simulate_noise=True)
    text, corrections = open_message(symbols, ALICE_KEYS.private)
    assert text == "noisy line"
    assert corrections == 20


def test_session_generates_keys_lazily():
    session = ChatSession(name="carol", prime_range=500)
    assert session.keys is None
    keys = session.ensure_keys()
    assert keys.public.n >= 256
    assert session.ensure_keys() is keys


def test_send_without_partner():
    session = ChatSession(keys=ALICE_KEYS)
    with pytest.raises(NoActiveChat):
        session.send_text("hello?")


def test_cannot_chat_with_self():
    session = ChatSession(keys=ALICE_KEYS)
    session.identifier = "127.0.0.1:4000"
    with pytest.raises(ValueError):
        session.start_chat("127.0.0.1:4000")
    with pytest.raises(ValueError):
        session.start_chat("   ")


def test_alice_and_bob_end_to_end(relay):
    alice = connect(relay, "alice", keys=ALICE_KEYS)
    bob = connect(relay, "bob", keys=generate_key_pair(500, min_modulus=256))
    try:
        bob.start_chat("alice")
        info = bob.receive()
        assert isinstance(info, StartChatInfo)
        assert info.identifier == alice.identifier
        assert bob.receiver.public_key == ALICE_KEYS.public

        bob.send_text("hi")

        incoming = alice.receive()
        assert isinstance(incoming, IncomingMessage)
        assert incoming.sender == bob.identifier
        assert incoming.sender_name == "bob"
        assert "hi" not in incoming.payload

        msg = alice.read_incoming(incoming)
        assert msg.text == "hi"
        assert msg.corrections == 0
        assert describe(alice, incoming) == "Message from {} (bob) :: hi".format(bob.identifier)
    finally:
        alice.disconnect()
        bob.disconnect()


def test_list_and_disconnect(relay):
    alice = connect(relay, "alice", keys=ALICE_KEYS)
    bob = connect(relay, "bob", keys=ALICE_KEYS)
    try:
        alice.request_list()
        listing = alice.receive()
        assert isinstance(listing, ClientList)
        assert {c.identifier for c in listing.clients} == {alice.identifier, bob.identifier}

        bob_id = bob.identifier
        bob.disconnect()
        assert wait_for(lambda: bob_id not in relay.registry)

        alice.request_list()
        listing = alice.receive()
        assert [c.identifier for c in listing.clients] == [alice.identifier]
        assert describe(alice, listing) == "[LIST] You are the only one connected."
    finally:
        alice.disconnect()


def test_unknown_target_and_offline_receiver(relay):
    alice = connect(relay, "alice", keys=ALICE_KEYS)
    bob = connect(relay, "bob", keys=ALICE_KEYS)
    try:
        alice.start_chat("nobody")
        missing = alice.receive()
        assert isinstance(missing, TargetNotFound)
        assert missing.identifier == "nobody"

        alice.start_chat("bob")
        assert isinstance(alice.receive(), StartChatInfo)

        bob_id = bob.identifier
        bob.disconnect()
        assert wait_for(lambda: bob_id not in relay.registry)

        alice.send_text("still there?")
        failure = alice.receive()
        assert isinstance(failure, DeliveryError)
        assert failure.recipient == bob_id
    finally:
        alice.disconnect()


def test_shutdown_notifies_clients(relay):
    alice = connect(relay, "alice", keys=ALICE_KEYS)
    relay.shutdown()
    notice = alice.receive()
    assert isinstance(notice, ServerMessage)
    assert notice.message == "Server is shutting down."
    assert alice.receive() is None
    assert not alice.connected


def test_fingerprint_is_stable():
    fpr = fingerprint_public_key(ALICE_KEYS.public)
    assert fpr == fingerprint_public_key(PublicKey(e=7, n=3233))
    assert fpr != fingerprint_public_key(PublicKey(e=5, n=3233))
    assert len(fpr.split(":")) == 8


def test_parse_host_port():
    assert parse_host_port("127.0.0.1:8000") == ("127.0.0.1", 8000)
    with pytest.raises(ValueError):
        parse_host_port("localhost")
    with pytest.raises(ValueError):
        parse_host_port("host:port")


def feed_input(monkeypatch, lines):
    lines = iter(lines)
    monkeypatch.setattr("builtins.input", lambda prompt="": next(lines))


def test_chat_loop_survives_lost_relay(relay, monkeypatch, capsys):
    alice = connect(relay, "alice", keys=ALICE_KEYS)
    relay.shutdown()
    assert isinstance(alice.receive(), ServerMessage)
    assert alice.receive() is None

    feed_input(monkeypatch, ["/list", "/chat bob", "hello", "/connect nowhere", "/quit"])
    chat_loop(alice)

    out = capsys.readouterr().out
    assert out.count("[NET] Not connected") == 2
    assert "No active chat" in out
    assert not alice.connected


def test_chat_loop_handles_broken_pipe(monkeypatch, capsys):
    session = ChatSession(keys=ALICE_KEYS)
    ours, theirs = socket.socketpair()
    theirs.close()
    session.sock = ours
    session._reader = FrameReader(ours)

    feed_input(monkeypatch, ["/list", "/quit"])
    chat_loop(session)

    assert "[NET] Not connected" in capsys.readouterr().out
    assert not session.connected


def test_chat_loop_reconnect_keeps_name_and_keys(relay, monkeypatch):
    alice = connect(relay, "alice", keys=ALICE_KEYS)
    first_id = alice.identifier
    try:
        feed_input(monkeypatch, ["/disconnect", f"/connect 127.0.0.1:{relay.port}", "/quit"])
        chat_loop(alice)

        assert alice.connected
        assert wait_for(lambda: alice.identifier not in ("", first_id))
        assert alice.keys is ALICE_KEYS
        assert wait_for(lambda: relay.registry.snapshot() == [(alice.identifier, "alice")])
        assert relay.registry.get(alice.identifier).public_key == ALICE_KEYS.public.to_wire()
    finally:
        alice.disconnect()
