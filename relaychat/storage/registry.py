"""
In-memory session registry for the relay broker.

One entry per live connection, keyed by the connection identifier
("host:port" of the peer):

    identifier -> SessionRecord(identifier, name, public_key, connection)

Every operation takes the same lock, so connection threads never see a
half-applied update. Iteration order is insertion order of the first
REGISTER on a connection; re-registering keeps the original position.
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class SessionRecord:
    identifier: str
    name: Optional[str]
    public_key: Dict[str, Any]
    connection: Any = None   # server.Connection used to reach this session


class Registry:
    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, SessionRecord] = {}

    def register(self, record: SessionRecord) -> Optional[SessionRecord]:
        """
        Create or overwrite the entry for record.identifier.

        :return: the entry that was replaced, if any
        """
        with self._lock:
            previous = self._sessions.get(record.identifier)
            self._sessions[record.identifier] = record
            return previous

    def get(self, identifier: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._sessions.get(identifier)

    def resolve(self, target: str, requester: Optional[str] = None) -> Optional[SessionRecord]:
        """
        Look a peer up by exact identifier, then by display name.

        The name scan skips the requester and returns the first match in
        registry order when several sessions share a name.
        """
        with self._lock:
            record = self._sessions.get(target)
            if record is not None or not target:
                return record
            for identifier, candidate in self._sessions.items():
                if identifier != requester and candidate.name == target:
                    return candidate
            return None

    def remove(self, identifier: str) -> Optional[SessionRecord]:
        """Drop an entry; removing an absent identifier is a no-op."""
        with self._lock:
            return self._sessions.pop(identifier, None)

    def snapshot(self) -> List[Tuple[str, Optional[str]]]:
        """(identifier, name) for every live session, requester included."""
        with self._lock:
            return [(identifier, rec.name) for identifier, rec in self._sessions.items()]

    def __contains__(self, identifier: object) -> bool:
        with self._lock:
            return identifier in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
