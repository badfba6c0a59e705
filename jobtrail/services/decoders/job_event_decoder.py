"""
Job event decoder catalog.

Maps an event type tag to the routine that decodes its payload. Only some
event types carry a structured body; every other tag, including tags this
build does not know, decodes to None ("no payload interpretation").
"""

from typing import Callable, Dict, Optional
import logging

from .base import (
    CustomJobEvent,
    JobArbitratedEvent,
    JobCreatedEvent,
    JobDisputedEvent,
    JobEventType,
    JobMessageEvent,
    JobRatedEvent,
    JobSignedEvent,
    JobUpdatedEvent,
    PayloadDecodeError,
    TruncatedPayloadError,
)
from .cursor import (
    ByteCursor,
    decode_address,
    decode_bool,
    decode_bytes,
    decode_bytes32,
    decode_string,
    decode_string_array,
    decode_uint8,
    decode_uint16,
    decode_uint32,
    decode_uint256,
    decode_utf8_remainder,
)
from ...config.marketplace_config import ARBITRATED_PAYLOAD_SIZE, MESSAGE_PAYLOAD_SIZE

logger = logging.getLogger(__name__)


def decode_job_created_event(data: bytes) -> JobCreatedEvent:
    ptr = ByteCursor(data)
    return JobCreatedEvent(
        title=decode_string(ptr),
        content_hash=decode_bytes32(ptr),
        multiple_applicants=decode_bool(ptr),
        tags=decode_string_array(ptr),
        token=decode_address(ptr),
        amount=decode_uint256(ptr),
        max_time=decode_uint32(ptr),
        delivery_method=decode_string(ptr),
        arbitrator=decode_address(ptr),
        whitelist_workers=decode_bool(ptr),
    )


def decode_job_updated_event(data: bytes) -> JobUpdatedEvent:
    ptr = ByteCursor(data)
    return JobUpdatedEvent(
        title=decode_string(ptr),
        content_hash=decode_bytes32(ptr),
        tags=decode_string_array(ptr),
        amount=decode_uint256(ptr),
        max_time=decode_uint32(ptr),
        arbitrator=decode_address(ptr),
        whitelist_workers=decode_bool(ptr),
    )


def decode_job_signed_event(data: bytes) -> JobSignedEvent:
    ptr = ByteCursor(data)
    revision = decode_uint16(ptr)
    return JobSignedEvent(revision=revision, signature="0x" + ptr.read_remaining().hex())


def decode_job_rated_event(data: bytes) -> JobRatedEvent:
    ptr = ByteCursor(data)
    rating = decode_uint8(ptr)
    return JobRatedEvent(rating=rating, review=decode_utf8_remainder(ptr))


def decode_job_disputed_event(data: bytes) -> JobDisputedEvent:
    ptr = ByteCursor(data)
    encrypted_session_key = decode_bytes(ptr)
    encrypted_content = decode_bytes(ptr)
    return JobDisputedEvent(
        encrypted_session_key=encrypted_session_key,
        encrypted_content=encrypted_content,
    )


def _require_fixed_size(data: bytes, size: int) -> None:
    if len(data) < size:
        raise TruncatedPayloadError(size, 0, len(data))


def decode_job_arbitrated_event(data: bytes) -> JobArbitratedEvent:
    # fields are contiguous, no length prefixes
    _require_fixed_size(data, ARBITRATED_PAYLOAD_SIZE)
    ptr = ByteCursor(data)
    return JobArbitratedEvent(
        creator_share=decode_uint16(ptr),
        creator_amount=decode_uint256(ptr),
        worker_share=decode_uint16(ptr),
        worker_amount=decode_uint256(ptr),
        reason_hash=decode_bytes32(ptr),
        worker_address=decode_address(ptr),
        arbitrator_amount=decode_uint256(ptr),
    )


def decode_job_message_event(data: bytes) -> JobMessageEvent:
    _require_fixed_size(data, MESSAGE_PAYLOAD_SIZE)
    ptr = ByteCursor(data)
    return JobMessageEvent(
        content_hash=decode_bytes32(ptr),
        recipient_address=decode_address(ptr),
    )


JOB_EVENT_DECODERS: Dict[JobEventType, Callable[[bytes], CustomJobEvent]] = {
    JobEventType.Created: decode_job_created_event,
    JobEventType.Updated: decode_job_updated_event,
    JobEventType.Signed: decode_job_signed_event,
    JobEventType.Rated: decode_job_rated_event,
    JobEventType.Disputed: decode_job_disputed_event,
    JobEventType.Arbitrated: decode_job_arbitrated_event,
    JobEventType.WorkerMessage: decode_job_message_event,
    JobEventType.OwnerMessage: decode_job_message_event,
}


def decode_job_event(event_type: int, data: bytes) -> Optional[CustomJobEvent]:
    """
    Decode an event payload by tag.

    Returns None for tags with no payload interpretation. Raises
    PayloadDecodeError (TruncatedPayloadError for short payloads) when a
    typed payload is malformed.
    """
    known = JobEventType.from_tag(event_type)
    decoder = JOB_EVENT_DECODERS.get(known) if known is not None else None
    if decoder is None:
        return None
    return decoder(data)


def try_decode_job_event(event_type: int, data: bytes) -> Optional[CustomJobEvent]:
    """Like decode_job_event, but a malformed payload yields None instead of raising."""
    try:
        return decode_job_event(event_type, data)
    except PayloadDecodeError as e:
        logger.debug(f"Could not decode payload for event type {event_type}: {e}")
        return None
