"""
Base types for job marketplace event decoding and replay.

Holds the event type tags, the decoded payload variants, the job snapshot
that replay mutates, and the error taxonomy shared by the decoders, the
replay engine and the key resolution pipeline.
"""

from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple, Union
import logging

from web3 import Web3

from ...config.marketplace_config import ZERO_ADDRESS, ZERO_HASH

logger = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================

class JobTrailError(Exception):
    """Base class for recoverable, data-dependent failures."""


class PayloadDecodeError(JobTrailError):
    """Event payload could not be interpreted."""


class TruncatedPayloadError(PayloadDecodeError):
    """Fewer bytes remain than a field declares."""

    def __init__(self, needed: int, offset: int, length: int):
        self.needed = needed
        self.offset = offset
        self.length = length
        super().__init__(
            f"need {needed} bytes at offset {offset}, payload is {length} bytes"
        )


class DecryptionError(JobTrailError):
    """Ciphertext did not authenticate under the given key, or was malformed."""


class KeyDerivationError(JobTrailError):
    """Signing provider could not derive a shared key for a pair."""


class ContentFetchError(JobTrailError):
    """Content-addressed storage did not return the requested content."""


class CursorInvariantError(AssertionError):
    """A cursor was driven outside its buffer. Programmer error, never recovered."""


# ============================================================================
# ENUMS
# ============================================================================

class JobEventType(IntEnum):
    """On-chain event tags emitted by the marketplace contract"""
    Created = 0
    Taken = 1
    Paid = 2
    Updated = 3
    Signed = 4
    Completed = 5
    Delivered = 6
    Closed = 7
    Reopened = 8
    Rated = 9
    Refunded = 10
    Disputed = 11
    Arbitrated = 12
    ArbitrationRefused = 13
    WhitelistedWorkerAdded = 14
    WhitelistedWorkerRemoved = 15
    CollateralWithdrawn = 16
    WorkerMessage = 17
    OwnerMessage = 18

    @classmethod
    def from_tag(cls, tag: int) -> Optional['JobEventType']:
        """Map a raw tag to a known type, None for tags this build does not know."""
        try:
            return cls(int(tag))
        except (ValueError, TypeError):
            return None


class JobState(IntEnum):
    """Job lifecycle state"""
    Open = 0
    Taken = 1
    Closed = 2


class DisputeDecryptionPath(Enum):
    """Which key material opened a dispute's content"""
    RECOVERED_VIA_ARBITRATOR_KEY = "recovered_via_arbitrator_key"
    USED_DIRECT_KEY = "used_direct_key"
    FAILED = "failed"


# ============================================================================
# DECODED PAYLOADS
# ============================================================================

@dataclass(frozen=True)
class JobCreatedEvent:
    title: str
    content_hash: str
    multiple_applicants: bool
    tags: Tuple[str, ...]
    token: str
    amount: int
    max_time: int
    delivery_method: str
    arbitrator: str
    whitelist_workers: bool


@dataclass(frozen=True)
class JobUpdatedEvent:
    """Token, delivery method and multiple_applicants cannot be changed after creation."""
    title: str
    content_hash: str
    tags: Tuple[str, ...]
    amount: int
    max_time: int
    arbitrator: str
    whitelist_workers: bool


@dataclass(frozen=True)
class JobSignedEvent:
    revision: int
    signature: str


@dataclass(frozen=True)
class JobRatedEvent:
    rating: int
    review: str


@dataclass(frozen=True)
class JobDisputedEvent:
    encrypted_session_key: bytes
    encrypted_content: bytes


@dataclass(frozen=True)
class JobArbitratedEvent:
    creator_share: int
    creator_amount: int
    worker_share: int
    worker_amount: int
    reason_hash: str
    worker_address: str
    arbitrator_amount: int


@dataclass(frozen=True)
class JobMessageEvent:
    """Shared by OwnerMessage and WorkerMessage"""
    content_hash: str
    recipient_address: str


CustomJobEvent = Union[
    JobCreatedEvent,
    JobUpdatedEvent,
    JobSignedEvent,
    JobRatedEvent,
    JobDisputedEvent,
    JobArbitratedEvent,
    JobMessageEvent,
]


# ============================================================================
# RAW ENVELOPE
# ============================================================================

def _to_bytes(value: Union[str, bytes, bytearray, None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(text)


@dataclass(frozen=True)
class JobEvent:
    """Raw event as read from the indexer, in on-chain order"""
    type_: int
    data: bytes
    address: str
    timestamp: int
    job_id: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'data', _to_bytes(self.data))
        object.__setattr__(self, 'address', Web3.to_checksum_address(self.address))

    @property
    def event_type(self) -> Optional[JobEventType]:
        return JobEventType.from_tag(self.type_)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'JobEvent':
        """Build from an indexer row (``type_``, ``data_``, ``address_``, ``timestamp_``, ``jobId``)."""
        return cls(
            type_=int(raw.get('type_', raw.get('type', -1))),
            data=raw.get('data_', raw.get('data')),
            address=raw.get('address_', raw.get('address', ZERO_ADDRESS)),
            timestamp=int(raw.get('timestamp_', raw.get('timestamp', 0))),
            job_id=int(raw.get('jobId', raw.get('job_id', 0))),
        )


# ============================================================================
# JOB SNAPSHOT
# ============================================================================

@dataclass
class JobRoles:
    creator: str = ZERO_ADDRESS
    worker: str = ZERO_ADDRESS
    arbitrator: str = ZERO_ADDRESS


@dataclass
class Job:
    """
    Job state as rebuilt by replay.

    `id` and `last_event_timestamp` are bookkeeping and never appear in
    diffs. Every other field is compared before and after each event.
    """
    id: int = 0
    state: JobState = JobState.Open
    whitelist_workers: bool = False
    roles: JobRoles = field(default_factory=JobRoles)
    title: str = ""
    tags: List[str] = field(default_factory=list)
    content_hash: str = ZERO_HASH
    multiple_applicants: bool = False
    amount: int = 0
    token: str = ZERO_ADDRESS
    timestamp: int = 0
    max_time: int = 0
    delivery_method: str = ""
    collateral_owed: int = 0
    escrow_id: int = 0
    result_hash: str = ZERO_HASH
    rating: int = 0
    disputed: bool = False
    allowed_workers: List[str] = field(default_factory=list)
    last_event_timestamp: int = 0


# Snapshot fields excluded from diffs
JOB_METADATA_FIELDS = frozenset({'id', 'last_event_timestamp'})


@dataclass(frozen=True)
class JobEventDiff:
    field: str
    old_value: Any
    new_value: Any

    def to_dict(self) -> dict:
        return {
            'field': self.field,
            'old_value': json_safe(self.old_value),
            'new_value': json_safe(self.new_value),
        }


@dataclass(frozen=True)
class JobEventWithDiffs:
    """
    Replayed event: envelope, decoded payload, state after the event and
    the field changes it caused. `content`/`session_key` are filled by the
    decryption steps, which return new instances.
    """
    event: JobEvent
    details: Optional[CustomJobEvent]
    job: Job
    diffs: Tuple[JobEventDiff, ...] = ()
    content: Optional[str] = None
    session_key: Optional[str] = None

    @property
    def type_(self) -> int:
        return self.event.type_

    @property
    def event_type(self) -> Optional[JobEventType]:
        return self.event.event_type

    @property
    def address(self) -> str:
        return self.event.address

    @property
    def timestamp(self) -> int:
        return self.event.timestamp

    def with_content(self, content: Optional[str], session_key: Optional[str] = None) -> 'JobEventWithDiffs':
        return replace(
            self,
            content=content,
            session_key=session_key if session_key is not None else self.session_key,
        )

    def to_dict(self) -> dict:
        event_type = self.event_type
        return {
            'type': event_type.name if event_type is not None else str(self.type_),
            'address': self.address,
            'timestamp': self.timestamp,
            'job_id': self.job.id,
            'diffs': [d.to_dict() for d in self.diffs],
            'content': self.content,
        }


def json_safe(value: Any) -> Any:
    if isinstance(value, IntEnum):
        return value.name
    if isinstance(value, bytes):
        return "0x" + value.hex()
    if isinstance(value, int) and not isinstance(value, bool) and value > 2 ** 53:
        return str(value)
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value
