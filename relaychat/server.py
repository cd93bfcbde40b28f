import argparse
import os
import socket
import sys
import threading
from typing import Optional, Set, Tuple

from dotenv import load_dotenv

from relaychat.common.framing import FrameReader, send_record
from relaychat.common.protocol import (
    ChatMessage,
    ClientEntry,
    ClientList,
    DeliveryError,
    ErrorMsg,
    IncomingMessage,
    InvalidRecord,
    ListRequest,
    Record,
    RegisterAck,
    RegisterMsg,
    ServerMessage,
    StartChatInfo,
    StartChatRequest,
    TargetNotFound,
    UnknownRecordType,
    parse_record,
)
from relaychat.storage.registry import Registry, SessionRecord

load_dotenv()


INVALID_FORMAT = "Invalid message format."
NOT_FOUND = "Receiver not found or offline."
UNDELIVERABLE = "User is offline or does not exist."
NOT_REGISTERED = "Register before sending messages."
SHUTDOWN_NOTICE = "Server is shutting down."


# ------------- Connection wrapper -------------


class Connection:
    """
    One accepted socket. Writes are serialized by a lock because messages
    for this peer are forwarded from other connections' threads.
    """

    def __init__(self, sock: socket.socket, addr: Tuple):
        self.sock = sock
        self.addr = addr
        self.identifier = f"{addr[0]}:{addr[1]}"
        self.closed = False
        self._write_lock = threading.Lock()

    @property
    def writable(self) -> bool:
        return not self.closed

    def send(self, record: Record) -> bool:
        """
        Write one record. Returns False if the socket is closed or the write fails.
        """
        with self._write_lock:
            if self.closed:
                return False
            try:
                send_record(self.sock, record)
            except OSError as e:
                print(f"[ERROR] Write to {self.identifier} failed: {e}")
                self.closed = True
                return False
            return True

    def close(self) -> None:
        with self._write_lock:
            if self.closed and self.sock.fileno() == -1:
                return
            self.closed = True
            try:
                # Wakes a reader thread blocked in recv().
                self.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # peer already gone
            self.sock.close()


# ------------- Relay broker -------------


class RelayServer:
    """
    Routes records between registered sessions. Payloads are forwarded as-is;
    the broker holds only public keys and never sees plaintext.
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 8000,
                 registry: Optional[Registry] = None, backlog: int = 16):
        self.host = host
        self.port = port
        self.backlog = backlog
        self.registry = registry if registry is not None else Registry()
        self._sock: Optional[socket.socket] = None
        self._stopping = threading.Event()
        self._conns: Set[Connection] = set()
        self._conns_lock = threading.Lock()
        self._handlers = {
            RegisterMsg: self.on_register,
            ListRequest: self.on_list,
            StartChatRequest: self.on_start_chat,
            ChatMessage: self.on_message,
        }

    # --- record handlers ---

    def on_register(self, conn: Connection, record: RegisterMsg) -> None:
        self.registry.register(SessionRecord(
            identifier=conn.identifier,
            name=record.name or "",
            public_key=record.public_key,
            connection=conn,
        ))
        print(f"[REGISTRY] Client {record.name or conn.identifier} registered with public key.")
        conn.send(RegisterAck(identifier=conn.identifier))

    def on_list(self, conn: Connection, record: ListRequest) -> None:
        entries = [ClientEntry(identifier=ident, name=name) for ident, name in self.registry.snapshot()]
        conn.send(ClientList(clients=entries))

    def on_start_chat(self, conn: Connection, record: StartChatRequest) -> None:
        target = self.registry.resolve(record.target_identifier, requester=conn.identifier)
        if target is None:
            print(f"[REGISTRY] Target '{record.target_identifier}' not found for {conn.identifier}")
            conn.send(TargetNotFound(identifier=record.target_identifier, message=NOT_FOUND))
            return

        conn.send(StartChatInfo(
            identifier=target.identifier,
            name=target.name,
            public_key=target.public_key,
        ))
        print(f"[REGISTRY] Sent public key of {target.name or target.identifier} to {conn.identifier}")

    def on_message(self, conn: Connection, record: ChatMessage) -> None:
        sender = self.registry.get(conn.identifier)
        if sender is None:
            print(f"[RELAY] Message from unregistered connection {conn.identifier}, rejected.")
            conn.send(ErrorMsg(message=NOT_REGISTERED))
            return

        receiver = self.registry.get(record.receiver)
        delivered = False
        if receiver is not None and receiver.connection is not None and receiver.connection.writable:
            delivered = receiver.connection.send(IncomingMessage(
                sender=sender.identifier,
                sender_name=sender.name,
                payload=record.payload,
            ))

        if delivered:
            size = len(record.payload) if isinstance(record.payload, (list, str)) else 1
            print(f"[RELAY] {sender.name or sender.identifier} -> {record.receiver} ({size} symbols)")
        else:
            print(f"[RELAY] Message for {record.receiver} could not be delivered.")
            conn.send(DeliveryError(recipient=record.receiver, reason=UNDELIVERABLE))

    # --- dispatch ---

    def handle_record(self, conn: Connection, record: Record) -> None:
        handler = self._handlers.get(type(record))
        if handler is None:
            # Parses fine but is not a request the broker serves (e.g. REGISTER_ACK).
            print(f"[WARN] Unknown message type from {conn.identifier}: {record.type}")
            conn.send(ErrorMsg(message=f"Unknown command type: {record.type}"))
            return
        handler(conn, record)

    def handle_line(self, conn: Connection, line: bytes) -> None:
        """Parse and dispatch one frame; protocol errors become ERROR replies."""
        try:
            record = parse_record(line)
        except UnknownRecordType as e:
            print(f"[WARN] Unknown message type from {conn.identifier}: {e.record_type}")
            conn.send(ErrorMsg(message=str(e)))
            return
        except InvalidRecord as e:
            print(f"[WARN] Bad record from {conn.identifier}: {e}")
            conn.send(ErrorMsg(message=INVALID_FORMAT))
            return

        self.handle_record(conn, record)

    def handle_client(self, conn: Connection) -> None:
        """Per-connection loop: frames are handled strictly in arrival order."""
        print(f"[+] Connection from {conn.identifier}")
        with self._conns_lock:
            self._conns.add(conn)

        try:
            for line in FrameReader(conn.sock):
                self.handle_line(conn, line)
        except (OSError, ConnectionError) as e:
            # FrameTooLarge is a ConnectionError; both end only this connection.
            if not self._stopping.is_set():
                print(f"[ERROR] {conn.identifier}: {e}")
        finally:
            removed = self.registry.remove(conn.identifier)
            with self._conns_lock:
                self._conns.discard(conn)
            conn.close()
            if removed is not None:
                print(f"[-] {removed.name or conn.identifier} disconnected.")
            else:
                print(f"[-] Connection closed: {conn.identifier}")

    # --- lifecycle ---

    def start(self) -> Tuple[str, int]:
        """Bind and listen. Returns the bound address (useful with port 0)."""
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind((self.host, self.port))
        s.listen(self.backlog)
        # Lets the accept loop notice shutdown().
        s.settimeout(0.5)
        self._sock = s
        self.port = s.getsockname()[1]
        return s.getsockname()[:2]

    def serve_forever(self) -> None:
        if self._sock is None:
            self.start()
        print("[SERVER] Waiting for clients to connect...")

        while not self._stopping.is_set():
            try:
                sock, addr = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stopping.is_set():
                    break
                raise

            sock.settimeout(None)
            conn = Connection(sock, addr)
            # Handle each client in its own thread (simple concurrency)
            t = threading.Thread(target=self.handle_client, args=(conn,), daemon=True)
            t.start()

    def shutdown(self) -> None:
        """Stop accepting, tell every live connection, then close them."""
        print("[SERVER] Shutting down server...")
        self._stopping.set()
        if self._sock is not None:
            self._sock.close()

        with self._conns_lock:
            conns = list(self._conns)
        for conn in conns:
            conn.send(ServerMessage(message=SHUTDOWN_NOTICE))
            conn.close()
        print("[SERVER] Server closed.")


# ------------- Config -------------


def load_env_config() -> Tuple[str, int]:
    host = os.getenv("SERVER_HOST", "0.0.0.0")
    port = int(os.getenv("SERVER_PORT", "8000"))
    return host, port


def main(argv=None):
    host, port = load_env_config()

    parser = argparse.ArgumentParser(description="Relay broker for end-to-end encrypted chat")
    parser.add_argument("--host", default=host, help="interface to bind (SERVER_HOST)")
    parser.add_argument("--port", type=int, default=port, help="TCP port (SERVER_PORT)")
    args = parser.parse_args(argv)

    print(f"[CONFIG] Listening on {args.host}:{args.port}")
    server = RelayServer(args.host, args.port)
    server.start()
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        server.shutdown()


if __name__ == "__main__":
    main(sys.argv[1:])
