"""
Content Service Module

Fetches event content from content-addressed storage (an IPFS HTTP
gateway) and opens it with the session keys resolved for the job.
Events only carry 32-byte sha2-256 digests; the gateway path is the
matching CIDv1 (dag-pb, base16 multibase).
"""

import asyncio
import logging
import threading
import time
from typing import Dict, List, Optional, Protocol

import requests

from .decoders.base import (
    ContentFetchError,
    DecryptionError,
    JobArbitratedEvent,
    JobCreatedEvent,
    JobDisputedEvent,
    JobEventType,
    JobEventWithDiffs,
    JobMessageEvent,
    JobUpdatedEvent,
)
from .encryption import decrypt_utf8_data, session_key_id
from ..config.marketplace_config import (
    CONTENT_CACHE_SIZE,
    CONTENT_MAX_RETRIES,
    CONTENT_REQUEST_TIMEOUT,
    CONTENT_RETRY_DELAY,
    ENCRYPTED_PLACEHOLDER,
    IPFS_GATEWAY_URL,
    ZERO_HASH,
)

logger = logging.getLogger(__name__)

# CIDv1 header: version 1, dag-pb codec, sha2-256 multihash of 32 bytes
_CID_V1_DAG_PB_SHA256 = bytes([0x01, 0x70, 0x12, 0x20])


def content_hash_to_cid(content_hash: str) -> str:
    """Turn a 0x-prefixed 32-byte digest into a base16 CIDv1 string."""
    digest = bytes.fromhex(content_hash[2:] if content_hash.startswith("0x") else content_hash)
    if len(digest) != 32:
        raise ContentFetchError(f"content hash must be 32 bytes, got {len(digest)}")
    return "f" + (_CID_V1_DAG_PB_SHA256 + digest).hex()


class ContentStore(Protocol):
    def fetch(self, content_hash: str) -> bytes:
        ...


class InMemoryContentStore:
    """Content store backed by a dict, for fixtures and offline replays"""

    def __init__(self, contents: Optional[Dict[str, bytes]] = None):
        self._contents: Dict[str, bytes] = dict(contents or {})
        self.fetch_count = 0

    def put(self, content_hash: str, data: bytes) -> None:
        self._contents[content_hash.lower()] = bytes(data)

    def fetch(self, content_hash: str) -> bytes:
        self.fetch_count += 1
        try:
            return self._contents[content_hash.lower()]
        except KeyError:
            raise ContentFetchError(f"content {content_hash} not found") from None


class IpfsContentStore:
    """IPFS gateway client with retries and an in-memory cache"""

    def __init__(
        self,
        gateway_url: str = IPFS_GATEWAY_URL,
        timeout: int = CONTENT_REQUEST_TIMEOUT,
        max_retries: int = CONTENT_MAX_RETRIES,
        retry_delay: float = CONTENT_RETRY_DELAY,
        session: Optional[requests.Session] = None,
        cache_size: int = CONTENT_CACHE_SIZE,
    ):
        self.gateway_url = gateway_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': 'jobtrail/0.1'})
        self.cache_size = cache_size
        self._cache: Dict[str, bytes] = {}
        # fetches run in worker threads (asyncio.to_thread)
        self._lock = threading.Lock()
        logger.info(f"IPFS content store initialized: {self.gateway_url}")

    def fetch(self, content_hash: str) -> bytes:
        key = content_hash.lower()
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        url = f"{self.gateway_url}/{content_hash_to_cid(content_hash)}"
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                response = self.session.get(url, timeout=self.timeout)
                response.raise_for_status()
                data = response.content
                break
            except requests.exceptions.RequestException as e:
                last_error = e
                logger.debug(f"Fetch {content_hash[:10]}... failed on attempt {attempt + 1}: {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_delay * (2 ** attempt))
        else:
            raise ContentFetchError(f"could not fetch {content_hash}: {last_error}")

        with self._lock:
            while key not in self._cache and self._cache and len(self._cache) >= self.cache_size:
                self._cache.pop(next(iter(self._cache)))
            self._cache[key] = data
        return data


def _content_target(event: JobEventWithDiffs, session_keys: Dict[str, str]):
    """Return (content_hash, session_key, plaintext_allowed) for an event, or None."""
    details = event.details
    job = event.job
    event_type = event.event_type
    owner_worker_key = session_keys.get(session_key_id(job.roles.creator, job.roles.worker))

    if event_type in (JobEventType.Created, JobEventType.Updated) and isinstance(
        details, (JobCreatedEvent, JobUpdatedEvent)
    ):
        return details.content_hash, owner_worker_key, True
    if event_type in (JobEventType.OwnerMessage, JobEventType.WorkerMessage) and isinstance(details, JobMessageEvent):
        return details.content_hash, session_keys.get(session_key_id(event.address, details.recipient_address)), False
    if event_type == JobEventType.Delivered:
        return job.result_hash, owner_worker_key, False
    if event_type == JobEventType.Arbitrated and isinstance(details, JobArbitratedEvent):
        return details.reason_hash, session_keys.get(session_key_id(job.roles.arbitrator, job.roles.creator)), False
    return None


def _open_content(data: bytes, session_key: Optional[str], plaintext_allowed: bool) -> str:
    if session_key is not None:
        try:
            return decrypt_utf8_data(data, session_key)
        except DecryptionError:
            if not plaintext_allowed:
                raise
    if not plaintext_allowed:
        raise DecryptionError("no session key for this content")
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecryptionError(f"content is neither sealed for this viewer nor UTF-8: {e}") from e


async def _load_content(
    event: JobEventWithDiffs,
    session_keys: Dict[str, str],
    store: ContentStore,
) -> JobEventWithDiffs:
    if event.content is not None:
        return event
    if event.event_type == JobEventType.Disputed:
        # decoded disputes were opened during key resolution
        return event if isinstance(event.details, JobDisputedEvent) else event.with_content(ENCRYPTED_PLACEHOLDER)
    target = _content_target(event, session_keys)
    if target is None:
        return event
    content_hash, session_key, plaintext_allowed = target
    if content_hash == ZERO_HASH:
        return event

    try:
        data = await asyncio.to_thread(store.fetch, content_hash)
        content = _open_content(data, session_key, plaintext_allowed)
    except (ContentFetchError, DecryptionError) as e:
        logger.warning(f"Content {content_hash[:10]}... for {event.event_type.name} event unavailable: {e}")
        content = ENCRYPTED_PLACEHOLDER
    return event.with_content(content)


async def fetch_event_contents(
    events: List[JobEventWithDiffs],
    session_keys: Dict[str, str],
    store: ContentStore,
) -> List[JobEventWithDiffs]:
    """
    Fetch and open the content referenced by each event.

    Returns new event instances in the original order. Content that cannot
    be fetched or opened becomes the placeholder string; nothing raises.
    """
    return list(await asyncio.gather(*(_load_content(e, session_keys, store) for e in events)))
