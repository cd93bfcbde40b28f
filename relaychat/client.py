import argparse
import os
import socket
import sys
import threading
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from dotenv import load_dotenv

from relaychat.codec.hamming import corrupt_units, decode_message_with_report, encode_message
from relaychat.common.framing import FrameReader, send_record
from relaychat.common.protocol import (
    ChatMessage,
    ClientList,
    DeliveryError,
    ErrorMsg,
    IncomingMessage,
    ListRequest,
    Record,
    RegisterAck,
    RegisterMsg,
    ServerMessage,
    StartChatInfo,
    StartChatRequest,
    TargetNotFound,
    parse_record,
)
from relaychat.common.utils import fingerprint_public_key, parse_host_port
from relaychat.crypto.rsa import (
    DEFAULT_PRIME_RANGE,
    KeyPair,
    PrivateKey,
    PublicKey,
    decrypt_message,
    encrypt_message,
    generate_key_pair,
    public_key_from_wire,
)

load_dotenv()


# Every 8-bit character code must stay below the modulus to decrypt correctly.
MIN_MODULUS = 256


class NoActiveChat(ValueError):
    """send_text() was called before a chat partner was resolved."""


# ------------------------ Pipeline ------------------------

def seal_message(text: str, public_key: PublicKey, simulate_noise: bool = False) -> List[str]:
    """
    Hamming-encode, optionally flip one bit per codeword, then encrypt.
    """
    encoded = encode_message(text)
    if simulate_noise:
        encoded = corrupt_units(encoded)
    return encrypt_message(encoded, public_key)


def open_message(symbols: List[Any], private_key: PrivateKey) -> Tuple[str, int]:
    """
    Decrypt, then Hamming-decode. Returns (text, corrected_codewords).
    """
    encoded = decrypt_message(symbols, private_key)
    return decode_message_with_report(encoded)


# ------------------------ Session ------------------------

@dataclass
class Peer:
    identifier: str
    name: Optional[str]
    public_key: PublicKey

    @property
    def label(self) -> str:
        return self.name or self.identifier


@dataclass
class ReceivedMessage:
    sender: str
    sender_name: Optional[str]
    text: str
    corrections: int


class ChatSession:
    """
    Client side of the relay protocol. Holds this user's key pair and the
    current chat partner; the broker only ever sees public keys and ciphertext.
    """

    def __init__(self, name: str = "", keys: Optional[KeyPair] = None,
                 prime_range: int = DEFAULT_PRIME_RANGE, simulate_noise: bool = False,
                 timeout: Optional[float] = None):
        self.name = name
        self.keys = keys
        self.prime_range = prime_range
        self.simulate_noise = simulate_noise
        self.timeout = timeout
        self.identifier = ""
        self.receiver: Optional[Peer] = None
        self.sock: Optional[socket.socket] = None
        self._reader: Optional[FrameReader] = None

    @property
    def connected(self) -> bool:
        return self.sock is not None

    def ensure_keys(self) -> KeyPair:
        """Generate the key pair on first use; it lives as long as the session."""
        if self.keys is None:
            self.keys = generate_key_pair(self.prime_range, min_modulus=MIN_MODULUS)
        return self.keys

    def connect(self, host: str, port: int) -> None:
        if self.connected:
            raise ConnectionError("Already connected")
        self.sock = socket.create_connection((host, port), timeout=self.timeout)
        self._reader = FrameReader(self.sock)

    def _send(self, record: Record) -> None:
        sock = self.sock
        if sock is None:
            raise ConnectionError("Not connected")
        send_record(sock, record)

    def register(self) -> None:
        keys = self.ensure_keys()
        self._send(RegisterMsg(name=self.name, public_key=keys.public.to_wire()))

    def request_list(self) -> None:
        self._send(ListRequest())

    def start_chat(self, target: str) -> None:
        target = target.strip()
        if not target:
            raise ValueError("A target identifier or name is required.")
        if target == self.identifier:
            raise ValueError("You cannot start a chat with yourself.")
        self._send(StartChatRequest(target_identifier=target))

    def stop_chat(self) -> Optional[Peer]:
        peer, self.receiver = self.receiver, None
        return peer

    def send_text(self, text: str) -> List[str]:
        if self.receiver is None:
            raise NoActiveChat("No active chat partner.")
        payload = seal_message(text, self.receiver.public_key, self.simulate_noise)
        self._send(ChatMessage(receiver=self.receiver.identifier, payload=payload))
        return payload

    def receive(self) -> Optional[Record]:
        """
        Read one record from the broker and apply it to the session state.
        Returns None once the broker closes the stream.
        """
        sock, reader = self.sock, self._reader
        if reader is None:
            raise ConnectionError("Not connected")
        frame = reader.read_frame()
        if frame is None:
            if self.sock is sock:
                self.disconnect()
            return None
        record = parse_record(frame)
        self.apply(record)
        return record

    def apply(self, record: Record) -> None:
        if isinstance(record, RegisterAck):
            self.identifier = record.identifier
        elif isinstance(record, StartChatInfo):
            self.receiver = Peer(
                identifier=record.identifier,
                name=record.name,
                public_key=public_key_from_wire(record.public_key),
            )

    def read_incoming(self, record: IncomingMessage) -> ReceivedMessage:
        """Decrypt and decode an INCOMING_MESSAGE with this session's private key."""
        keys = self.ensure_keys()
        if not isinstance(record.payload, list):
            raise ValueError("Incoming payload is not a list of symbols")
        text, corrections = open_message(record.payload, keys.private)
        return ReceivedMessage(
            sender=record.sender,
            sender_name=record.sender_name,
            text=text,
            corrections=corrections,
        )

    def disconnect(self) -> None:
        """Drop the connection; name and key pair survive for the next connect()."""
        sock = self.sock
        if sock is None:
            return
        self.sock = None
        self._reader = None
        self.receiver = None
        self.identifier = ""
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # broker already closed its end
        sock.close()


# ------------------------ Env ------------------------

def load_env() -> Tuple[str, int, int, bool]:
    host = os.getenv("SERVER_HOST", "127.0.0.1")
    port = int(os.getenv("SERVER_PORT", "8000"))
    prime_range = int(os.getenv("KEY_PRIME_RANGE", str(DEFAULT_PRIME_RANGE)))
    simulate_noise = os.getenv("SIMULATE_NOISE", "0").lower() in ("1", "true", "yes")
    return host, port, prime_range, simulate_noise


# ------------------------ Display ------------------------

HELP = """Commands:
  /list                      list connected clients
  /chat <identifier|name>    start an encrypted chat
  /stop                      leave the current chat
  /disconnect                drop the relay connection, keeping name and keys
  /connect HOST:PORT         reconnect and register again
  /help                      show this help
  /quit                      disconnect and exit
Anything else is sent to the current chat partner."""


def describe(session: ChatSession, record: Record) -> str:
    if isinstance(record, RegisterAck):
        return f"[NET] Registered with server as {session.name or record.identifier}."
    if isinstance(record, ClientList):
        others = [c for c in record.clients if c.identifier != session.identifier]
        if not others:
            return "[LIST] You are the only one connected."
        lines = ["[LIST] Connected clients:"]
        for i, c in enumerate(others, 1):
            lines.append(f"  {i:02d}. {c.name or 'Unnamed'} ({c.identifier})")
        return "\n".join(lines)
    if isinstance(record, StartChatInfo):
        peer = session.receiver
        fpr = fingerprint_public_key(peer.public_key)
        return f"[CHAT] Entering chat with {peer.label}. Key fingerprint {fpr}."
    if isinstance(record, TargetNotFound):
        return f"[CHAT] Could not start chat with {record.identifier}: {record.message}"
    if isinstance(record, IncomingMessage):
        try:
            msg = session.read_incoming(record)
        except ValueError as e:
            return f"[ERROR] Failed to read message from {record.sender_name or record.sender}: {e}"
        note = f" [FEC] corrected {msg.corrections} codeword(s)" if msg.corrections else ""
        who = msg.sender_name or msg.sender
        if session.receiver is not None and session.receiver.identifier == msg.sender:
            return f"{who} :: {msg.text}{note}"
        return f"Message from {msg.sender} ({who}) :: {msg.text}{note}"
    if isinstance(record, DeliveryError):
        return f"[ERROR] Message to {record.recipient} failed: {record.reason}"
    if isinstance(record, (ErrorMsg, ServerMessage)):
        return f"[SERVER] {record.message}"
    return f"[SERVER] {record.model_dump_json(by_alias=True)}"


def reader_loop(session: ChatSession, sock: Optional[socket.socket] = None) -> None:
    """Background thread: print every record until this connection goes away."""
    sock = sock or session.sock
    while sock is not None and session.sock is sock:
        try:
            record = session.receive()
        except ValueError as e:
            print(f"\n[ERROR] Error processing server data: {e}")
            continue
        except OSError:
            break
        if record is None:
            break
        print(f"\n{describe(session, record)}")
    print("\n[NET] Disconnected from server.")


def open_connection(session: ChatSession, host: str, port: int) -> threading.Thread:
    """Connect, register and start the reader thread for this connection."""
    session.connect(host, port)
    print(f"[NET] Connected to {host}:{port}.")
    t = threading.Thread(target=reader_loop, args=(session, session.sock), daemon=True)
    session.register()
    t.start()
    return t


# ------------------------ Main client flow ------------------------

def run_command(session: ChatSession, command: str, arg: str) -> None:
    if command == "/help":
        print(HELP)
    elif command == "/list":
        session.request_list()
    elif command == "/chat":
        try:
            session.start_chat(arg)
        except ValueError as e:
            print(f"[CHAT] {e}")
    elif command == "/stop":
        peer = session.stop_chat()
        print(f"[CHAT] Exiting chat with {peer.label}." if peer else "[CHAT] Not currently in a chat.")
    elif command == "/connect":
        if session.connected:
            print("[NET] Already connected. Use /disconnect first.")
            return
        try:
            host, port = parse_host_port(arg.strip())
        except ValueError as e:
            print(f"[NET] {e}")
            return
        open_connection(session, host, port)
    elif command == "/disconnect":
        if not session.connected:
            print("[NET] Not connected.")
            return
        session.disconnect()
    else:
        print("[CHAT] Invalid command. Type /help for help.")


def chat_loop(session: ChatSession) -> None:
    print("📨 Type /help for commands.\n")
    while True:
        try:
            text = input("> ").strip()
        except EOFError:
            break
        if not text:
            continue

        try:
            if text.startswith("/"):
                command, _, arg = text.partition(" ")
                command = command.lower()
                if command == "/quit":
                    break
                run_command(session, command, arg)
                continue

            try:
                session.send_text(text)
            except NoActiveChat:
                print("[CHAT] No active chat. Use /chat <identifier|name> first.")
            except ValueError as e:
                print(f"[ERROR] Could not encrypt message: {e}")
        except OSError as e:
            session.disconnect()
            print(f"[NET] Not connected. Use /connect HOST:PORT to reconnect. ({e})")


def main(argv=None):
    host, port, prime_range, simulate_noise = load_env()

    parser = argparse.ArgumentParser(description="End-to-end encrypted relay chat client")
    parser.add_argument("--server", help="HOST:PORT of the relay (SERVER_HOST/SERVER_PORT)")
    parser.add_argument("--name", help="display name (prompted if omitted)")
    parser.add_argument("--noise", action="store_true", default=simulate_noise,
                        help="flip one bit per codeword before encrypting (SIMULATE_NOISE)")
    args = parser.parse_args(argv)

    if args.server:
        host, port = parse_host_port(args.server)
    name = args.name if args.name is not None else input("Enter your name (press Enter to skip): ").strip()

    session = ChatSession(name=name, prime_range=prime_range, simulate_noise=args.noise)
    print("[RSA] Generating RSA keys...")
    keys = session.ensure_keys()
    print(f"[RSA] Keys generated. Fingerprint {fingerprint_public_key(keys.public)}")

    print(f"[CONFIG] Connecting to {host}:{port}...")
    try:
        open_connection(session, host, port)
    except OSError as e:
        raise SystemExit(f"[NET] Connection error: {e}. Ensure server is running at {host}:{port}.")

    try:
        chat_loop(session)
    except KeyboardInterrupt:
        pass
    finally:
        session.disconnect()
        print("✔ Session closed.")


if __name__ == "__main__":
    main(sys.argv[1:])
