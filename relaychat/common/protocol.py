"""
Pydantic record models for the relay protocol.
These are the ONLY structures exchanged between clients and the broker.

Every record is one JSON object with a "type" tag, rendered on a single line.
"""

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class Record(BaseModel):
    # NaN/Infinity in a payload go back out as the same JSON constants json.loads accepted
    model_config = ConfigDict(populate_by_name=True, ser_json_inf_nan="constants")


# -------------------------
# Session setup
# -------------------------

class RegisterMsg(Record):
    type: Literal["REGISTER"] = "REGISTER"
    name: Optional[str] = None
    public_key: Dict[str, Any] = Field(alias="publicKey")   # {"e": "...", "n": "..."}


class RegisterAck(Record):
    type: Literal["REGISTER_ACK"] = "REGISTER_ACK"
    identifier: str     # "host:port" of the registering connection


class ListRequest(Record):
    type: Literal["LIST_REQUEST"] = "LIST_REQUEST"


class ClientEntry(BaseModel):
    identifier: str
    name: Optional[str] = None


class ClientList(Record):
    type: Literal["CLIENT_LIST"] = "CLIENT_LIST"
    clients: List[ClientEntry] = Field(alias="list")


# -------------------------
# Peer lookup
# -------------------------

class StartChatRequest(Record):
    type: Literal["START_CHAT_REQUEST"] = "START_CHAT_REQUEST"
    target_identifier: str = Field(alias="targetIdentifier")   # identifier or display name


class StartChatInfo(Record):
    type: Literal["START_CHAT_INFO"] = "START_CHAT_INFO"
    identifier: str
    name: Optional[str] = None
    public_key: Dict[str, Any] = Field(alias="publicKey")


class TargetNotFound(Record):
    type: Literal["TARGET_NOT_FOUND"] = "TARGET_NOT_FOUND"
    identifier: str     # the string the requester asked for
    message: str


# -------------------------
# Relayed chat
# -------------------------

class ChatMessage(Record):
    type: Literal["MESSAGE"] = "MESSAGE"
    receiver: str
    payload: Any        # opaque ciphertext; the broker never looks inside


class IncomingMessage(Record):
    type: Literal["INCOMING_MESSAGE"] = "INCOMING_MESSAGE"
    sender: str
    sender_name: Optional[str] = Field(default=None, alias="senderName")
    payload: Any


class DeliveryError(Record):
    type: Literal["DELIVERY_ERROR"] = "DELIVERY_ERROR"
    recipient: str
    reason: str


# -------------------------
# Notices
# -------------------------

class ErrorMsg(Record):
    type: Literal["ERROR"] = "ERROR"
    message: str


class ServerMessage(Record):
    type: Literal["SERVER_MESSAGE"] = "SERVER_MESSAGE"
    message: str


_RECORD_MODELS = (
    RegisterMsg,
    RegisterAck,
    ListRequest,
    ClientList,
    StartChatRequest,
    StartChatInfo,
    TargetNotFound,
    ChatMessage,
    IncomingMessage,
    DeliveryError,
    ErrorMsg,
    ServerMessage,
)

AnyRecord = Annotated[Union[_RECORD_MODELS], Field(discriminator="type")]

_RECORD_ADAPTER = TypeAdapter(AnyRecord)

RECORD_TYPES = frozenset(m.model_fields["type"].default for m in _RECORD_MODELS)


class ProtocolError(ValueError):
    """A received line could not be turned into a record."""


class InvalidRecord(ProtocolError):
    """Not JSON, not an object, or a known type with bad fields."""


class UnknownRecordType(ProtocolError):
    def __init__(self, record_type: Any):
        super().__init__(f"Unknown command type: {record_type}")
        self.record_type = record_type


def parse_record(line: Union[bytes, str]) -> AnyRecord:
    """
    Parse one frame into its record model.

    :raises InvalidRecord: malformed JSON or fields
    :raises UnknownRecordType: missing or unrecognized "type"
    """
    try:
        obj = json.loads(line)
    except (ValueError, RecursionError) as exc:
        raise InvalidRecord(f"Invalid JSON: {exc}") from exc

    if not isinstance(obj, dict):
        raise InvalidRecord("Record must be a JSON object")

    record_type = obj.get("type")
    if not isinstance(record_type, str) or record_type not in RECORD_TYPES:
        raise UnknownRecordType(record_type)

    try:
        return _RECORD_ADAPTER.validate_python(obj)
    except ValidationError as exc:
        raise InvalidRecord(f"Invalid {record_type} record: {exc.error_count()} field error(s)") from exc


def dump_record(record: Record) -> str:
    """Compact single-line JSON using wire (alias) field names."""
    return record.model_dump_json(by_alias=True)
