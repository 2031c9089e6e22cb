import logging
import pickle
from enum import Enum
from typing import Any, NamedTuple, Optional, Tuple

from raftcore.log import LogEntry

logger = logging.getLogger(__name__)
HEADER_LENGTH = 8
HEADER_BYTEORDER = "big"


class ClientDisconnected(Exception):
    pass


class RejectReason(Enum):
    STALE_TERM = "stale_term"
    LOG_MISMATCH = "log_mismatch"
    ALREADY_VOTED = "already_voted"
    STALE_LOG = "stale_log"
    NOT_LEADER = "not_leader"


# Peer RPCs

RequestVote = NamedTuple(
    "RequestVote", [("term", int), ("candidate_id", int), ("last_log_index", int), ("last_log_term", int)]
)
RequestVoteResponse = NamedTuple(
    "RequestVoteResponse", [("term", int), ("vote_granted", bool), ("reason", Optional[RejectReason])]
)
AppendEntries = NamedTuple(
    "AppendEntries",
    [
        ("term", int),
        ("leader_id", int),
        ("prev_log_index", int),
        ("prev_log_term", int),
        ("entries", Tuple[LogEntry, ...]),
        ("leader_commit", int),
    ],
)
# match_index is the last index covered by the request on success, and the follower's last log index on failure
AppendEntriesResponse = NamedTuple(
    "AppendEntriesResponse",
    [("term", int), ("success", bool), ("match_index", int), ("reason", Optional[RejectReason])],
)

# Client request messages

Propose = NamedTuple("Propose", [("command", Any)])
# result is filled in once the entry has been applied, by whoever waited for that to happen
ProposeResult = NamedTuple(
    "ProposeResult",
    [
        ("accepted", bool),
        ("leader_hint", Optional[int]),
        ("index", Optional[int]),
        ("term", Optional[int]),
        ("reason", Optional[RejectReason]),
        ("result", Any),
    ],
)

# Commands understood by the key-value state machine
SetValue = NamedTuple("SetValue", [("request_id", str), ("key", str), ("value", Any)])
GetValue = NamedTuple("GetValue", [("request_id", str), ("key", str)])
DelValue = NamedTuple("DelValue", [("request_id", str), ("key", str)])
NoOp = NamedTuple("NoOp", [("request_id", str)])


class Message:
    """Envelope for everything that crosses the wire, addressed by server id (or client id for client replies)"""

    ALLOWED_MESSAGES = (
        RequestVote,
        RequestVoteResponse,
        AppendEntries,
        AppendEntriesResponse,
        Propose,
        ProposeResult,
    )

    __slots__ = ("sender", "recipient", "content")

    def __init__(self, sender, recipient, content):
        if not isinstance(content, self.ALLOWED_MESSAGES):
            raise ValueError(f"cannot send {type(content).__name__}, allowed are {self.ALLOWED_MESSAGES}")
        self.sender = sender
        self.recipient = recipient
        self.content = content

    def reply(self, content):
        return Message(sender=self.recipient, recipient=self.sender, content=content)

    def _fields(self):
        return self.sender, self.recipient, self.content

    def __bytes__(self):
        return pickle.dumps(self._fields())

    @classmethod
    def from_bytes(cls, data):
        sender, recipient, content = pickle.loads(data)
        return cls(sender, recipient, content)

    def __eq__(self, other):
        if not isinstance(other, Message):
            return NotImplemented
        return self._fields() == other._fields()

    def __repr__(self):
        return f"Message(sender={self.sender!r}, recipient={self.recipient!r}, content={self.content!r})"

    def __str__(self):
        return f"Message from {self.sender} to {self.recipient} containing {type(self.content).__name__}"


def frame(payload: bytes) -> bytes:
    return len(payload).to_bytes(HEADER_LENGTH, byteorder=HEADER_BYTEORDER) + payload


def send_message(sock, payload: bytes):
    if not isinstance(payload, bytes):
        raise TypeError(f"can only send bytes, got {type(payload)}")
    logger.debug(f"sending frame with {len(payload)} byte payload")
    sock.sendall(frame(payload))


def recv_message(sock) -> bytes:
    """Blocks until one whole frame has arrived and returns its payload"""
    size = int.from_bytes(_recv_exactly(sock, HEADER_LENGTH), byteorder=HEADER_BYTEORDER)
    logger.debug(f"receiving frame with {size} byte payload")
    return _recv_exactly(sock, size)


def _recv_exactly(sock, size):
    chunks = []
    remaining = size
    while remaining:
        chunk = sock.recv(remaining)
        if not chunk:
            raise ClientDisconnected(f"connection closed with {remaining} of {size} bytes outstanding")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)
