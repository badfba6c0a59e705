"""
Job marketplace event decoders.

Exports:
- ByteCursor and the primitive decoders used to build payload decoders
- decode_job_event / try_decode_job_event: tag-dispatched payload decoding
- Decoded payload dataclasses, the Job snapshot and the error taxonomy
"""

from .base import (
    # Errors
    JobTrailError,
    PayloadDecodeError,
    TruncatedPayloadError,
    DecryptionError,
    KeyDerivationError,
    ContentFetchError,
    CursorInvariantError,
    # Enums
    JobEventType,
    JobState,
    DisputeDecryptionPath,
    # Decoded payloads
    JobCreatedEvent,
    JobUpdatedEvent,
    JobSignedEvent,
    JobRatedEvent,
    JobDisputedEvent,
    JobArbitratedEvent,
    JobMessageEvent,
    CustomJobEvent,
    # Envelopes and state
    JobEvent,
    JobRoles,
    Job,
    JobEventDiff,
    JobEventWithDiffs,
    JOB_METADATA_FIELDS,
)

from .cursor import (
    ByteCursor,
    decode_bool,
    decode_uint8,
    decode_uint16,
    decode_uint32,
    decode_uint256,
    decode_bytes32,
    decode_address,
    decode_bytes,
    decode_string,
    decode_string_array,
)

from .job_event_decoder import (
    JOB_EVENT_DECODERS,
    decode_job_event,
    try_decode_job_event,
    decode_job_created_event,
    decode_job_updated_event,
    decode_job_signed_event,
    decode_job_rated_event,
    decode_job_disputed_event,
    decode_job_arbitrated_event,
    decode_job_message_event,
)

__all__ = [
    'JobTrailError',
    'PayloadDecodeError',
    'TruncatedPayloadError',
    'DecryptionError',
    'KeyDerivationError',
    'ContentFetchError',
    'CursorInvariantError',
    'JobEventType',
    'JobState',
    'DisputeDecryptionPath',
    'JobCreatedEvent',
    'JobUpdatedEvent',
    'JobSignedEvent',
    'JobRatedEvent',
    'JobDisputedEvent',
    'JobArbitratedEvent',
    'JobMessageEvent',
    'CustomJobEvent',
    'JobEvent',
    'JobRoles',
    'Job',
    'JobEventDiff',
    'JobEventWithDiffs',
    'JOB_METADATA_FIELDS',
    'ByteCursor',
    'decode_bool',
    'decode_uint8',
    'decode_uint16',
    'decode_uint32',
    'decode_uint256',
    'decode_bytes32',
    'decode_address',
    'decode_bytes',
    'decode_string',
    'decode_string_array',
    'JOB_EVENT_DECODERS',
    'decode_job_event',
    'try_decode_job_event',
    'decode_job_created_event',
    'decode_job_updated_event',
    'decode_job_signed_event',
    'decode_job_rated_event',
    'decode_job_disputed_event',
    'decode_job_arbitrated_event',
    'decode_job_message_event',
]
