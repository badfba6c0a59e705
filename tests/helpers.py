"""
Payload encoders and fixtures for building marketplace event logs in tests.

Mirrors the on-chain packing: big-endian integers, uint32 length prefixes,
raw 20-byte addresses and 32-byte hashes.
"""
import os
import sys
from typing import Sequence

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from web3 import Web3

from jobtrail.config.marketplace_config import ZERO_ADDRESS
from jobtrail.services.decoders.base import JobEvent, JobEventType

JOB_ID = 42
CREATED_AT = 1_700_000_000

OWNER = Web3.to_checksum_address("0x" + "a1" * 20)
WORKER = Web3.to_checksum_address("0x" + "b2" * 20)
ARBITRATOR = Web3.to_checksum_address("0x" + "c3" * 20)
OUTSIDER = Web3.to_checksum_address("0x" + "d4" * 20)
TOKEN = Web3.to_checksum_address("0x" + "e5" * 20)

CONTENT_HASH = "0x" + "11" * 32
UPDATED_CONTENT_HASH = "0x" + "22" * 32
MESSAGE_HASH = "0x" + "33" * 32
RESULT_HASH = "0x" + "44" * 32
REASON_HASH = "0x" + "55" * 32


def u32(value: int) -> bytes:
    return value.to_bytes(4, 'big')


def u256(value: int) -> bytes:
    return value.to_bytes(32, 'big')


def encode_string(value: str) -> bytes:
    raw = value.encode('utf-8')
    return u32(len(raw)) + raw


def encode_string_array(values: Sequence[str]) -> bytes:
    return u32(len(values)) + b"".join(encode_string(v) for v in values)


def encode_bytes(value: bytes) -> bytes:
    return u32(len(value)) + value


def encode_address(address: str) -> bytes:
    return bytes.fromhex(address[2:])


def encode_hash(value: str) -> bytes:
    return bytes.fromhex(value[2:])


def encode_bool(value: bool) -> bytes:
    return b"\x01" if value else b"\x00"


def encode_job_created_event(
    title: str = "Fix bug",
    content_hash: str = CONTENT_HASH,
    multiple_applicants: bool = False,
    tags: Sequence[str] = ("backend",),
    token: str = TOKEN,
    amount: int = 1000,
    max_time: int = 86400,
    delivery_method: str = "ipfs",
    arbitrator: str = ZERO_ADDRESS,
    whitelist_workers: bool = False,
) -> bytes:
    return (
        encode_string(title)
        + encode_hash(content_hash)
        + encode_bool(multiple_applicants)
        + encode_string_array(tags)
        + encode_address(token)
        + u256(amount)
        + u32(max_time)
        + encode_string(delivery_method)
        + encode_address(arbitrator)
        + encode_bool(whitelist_workers)
    )


def encode_job_updated_event(
    title: str = "Fix bug",
    content_hash: str = CONTENT_HASH,
    tags: Sequence[str] = ("backend",),
    amount: int = 1000,
    max_time: int = 86400,
    arbitrator: str = ZERO_ADDRESS,
    whitelist_workers: bool = False,
) -> bytes:
    return (
        encode_string(title)
        + encode_hash(content_hash)
        + encode_string_array(tags)
        + u256(amount)
        + u32(max_time)
        + encode_address(arbitrator)
        + encode_bool(whitelist_workers)
    )


def encode_job_signed_event(revision: int, signature: bytes) -> bytes:
    return revision.to_bytes(2, 'big') + signature


def encode_job_rated_event(rating: int, review: str) -> bytes:
    return bytes([rating]) + review.encode('utf-8')


def encode_job_disputed_event(encrypted_session_key: bytes, encrypted_content: bytes) -> bytes:
    return encode_bytes(encrypted_session_key) + encode_bytes(encrypted_content)


def encode_job_arbitrated_event(
    creator_share: int = 4000,
    creator_amount: int = 400,
    worker_share: int = 5000,
    worker_amount: int = 500,
    reason_hash: str = REASON_HASH,
    worker_address: str = WORKER,
    arbitrator_amount: int = 100,
) -> bytes:
    return (
        creator_share.to_bytes(2, 'big')
        + u256(creator_amount)
        + worker_share.to_bytes(2, 'big')
        + u256(worker_amount)
        + encode_hash(reason_hash)
        + encode_address(worker_address)
        + u256(arbitrator_amount)
    )


def encode_job_message_event(content_hash: str, recipient: str) -> bytes:
    return encode_hash(content_hash) + encode_address(recipient)


def raw_event(
    event_type,
    data: bytes = b"",
    address: str = OWNER,
    timestamp: int = CREATED_AT,
    job_id: int = JOB_ID,
) -> JobEvent:
    return JobEvent(
        type_=int(event_type),
        data=data,
        address=address,
        timestamp=timestamp,
        job_id=job_id,
    )


def basic_job_log(arbitrator: str = ZERO_ADDRESS):
    """Created by OWNER, then taken by WORKER with escrow id 1."""
    return [
        raw_event(JobEventType.Created, encode_job_created_event(arbitrator=arbitrator)),
        raw_event(JobEventType.Taken, u256(1), address=WORKER, timestamp=CREATED_AT + 60),
    ]
