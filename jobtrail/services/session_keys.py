"""
Session key resolution for a job view.

A viewer (the local signer) derives pairwise session keys with the other
parties of a job, opens dispute records with them, and then decrypts the
content referenced by the job's events.

Collaborators:
- Signer: holds the viewer's key material; derives a shared key with a
  counterpart's public key for a given job (may prompt a wallet)
- PublicKeyDirectory: registered encryption public keys by address
- ContentStore: content-addressed storage (see content_service)

Derivation runs under a per-session asyncio.Lock so overlapping passes
never ask the signer twice for the same pair.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from web3 import Web3

from .content_service import ContentStore, fetch_event_contents
from .decoders.base import (
    DisputeDecryptionPath,
    JobDisputedEvent,
    JobEventType,
    JobEventWithDiffs,
    KeyDerivationError,
)
from .encryption import apply_dispute_decryption, session_key_id
from ..config.marketplace_config import EMPTY_PUBLIC_KEY, ZERO_ADDRESS

logger = logging.getLogger(__name__)

# Events whose emitter takes part in the job's private conversation
RELEVANT_EVENT_TYPES = frozenset({
    JobEventType.OwnerMessage,
    JobEventType.WorkerMessage,
    JobEventType.Paid,
    JobEventType.Taken,
    JobEventType.Signed,
    JobEventType.WhitelistedWorkerAdded,
    JobEventType.WhitelistedWorkerRemoved,
})


# ============================================================================
# COLLABORATORS
# ============================================================================

class Signer(Protocol):
    address: str

    async def derive_shared_key(self, counterpart_public_key: str, job_id: int) -> str:
        """Return the hex session key shared with the holder of `counterpart_public_key`.

        Raises KeyDerivationError when the key cannot be derived.
        """
        ...


class PublicKeyDirectory(Protocol):
    async def lookup(self, addresses: Iterable[str]) -> Dict[str, str]:
        ...


def is_empty_public_key(public_key: Optional[str]) -> bool:
    if not public_key or public_key == EMPTY_PUBLIC_KEY:
        return True
    digits = public_key[2:] if public_key.startswith("0x") else public_key
    return not digits.strip("0")


class LocalKeySigner:
    """
    Signer holding a secp256k1 encryption key in memory.

    The session key is keccak256(ECDH shared secret || uint256 job id), so
    both sides of a pair derive the same value.
    """

    def __init__(self, address: str, private_key: Optional[ec.EllipticCurvePrivateKey] = None):
        self.address = Web3.to_checksum_address(address)
        self._private_key = private_key or ec.generate_private_key(ec.SECP256K1())

    @property
    def public_key(self) -> str:
        point = self._private_key.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.CompressedPoint,
        )
        return "0x" + point.hex()

    async def derive_shared_key(self, counterpart_public_key: str, job_id: int) -> str:
        if is_empty_public_key(counterpart_public_key):
            raise KeyDerivationError("counterpart has no registered public key")
        digits = counterpart_public_key[2:] if counterpart_public_key.startswith("0x") else counterpart_public_key
        try:
            peer = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), bytes.fromhex(digits))
        except ValueError as e:
            raise KeyDerivationError(f"invalid public key {counterpart_public_key[:12]}...: {e}") from e
        shared_secret = self._private_key.exchange(ec.ECDH(), peer)
        return Web3.to_hex(Web3.keccak(shared_secret + int(job_id).to_bytes(32, 'big')))


class StaticPublicKeyDirectory:
    """Public key directory over a fixed mapping; unknown addresses get the empty sentinel"""

    def __init__(self, public_keys: Optional[Dict[str, str]] = None):
        self._keys = {Web3.to_checksum_address(a): k for a, k in (public_keys or {}).items()}

    def register(self, address: str, public_key: str) -> None:
        self._keys[Web3.to_checksum_address(address)] = public_key

    async def lookup(self, addresses: Iterable[str]) -> Dict[str, str]:
        return {a: self._keys.get(Web3.to_checksum_address(a), EMPTY_PUBLIC_KEY) for a in addresses}


# ============================================================================
# ADDRESS DISCOVERY
# ============================================================================

def collect_relevant_addresses(
    events: Sequence[JobEventWithDiffs],
    signer_address: Optional[str] = None,
) -> List[str]:
    """Creator, viewer, and every emitter of a conversation-relevant event (first-seen order)."""
    if not events:
        return []
    seen: Dict[str, None] = {}
    for event in events:
        if event.event_type in RELEVANT_EVENT_TYPES:
            seen[Web3.to_checksum_address(event.address)] = None
    seen[events[0].job.roles.creator] = None
    if signer_address:
        seen[Web3.to_checksum_address(signer_address)] = None
    return list(seen)


def collect_arbitrator_addresses(events: Sequence[JobEventWithDiffs]) -> List[str]:
    """Every arbitrator the job has had, excluding the zero address."""
    seen: Dict[str, None] = {}
    for event in events:
        arbitrator = event.job.roles.arbitrator
        if arbitrator != ZERO_ADDRESS:
            seen[arbitrator] = None
    return list(seen)


# ============================================================================
# RESOLUTION
# ============================================================================

@dataclass
class KeyResolutionResult:
    events: List[JobEventWithDiffs]
    session_keys: Dict[str, str]
    dispute_paths: Dict[int, DisputeDecryptionPath] = field(default_factory=dict)
    generation: int = 0
    superseded: bool = False


class _PassState:
    """Writes of one resolution pass; merged into the session only if the pass completes."""

    def __init__(self):
        self.session_keys: Dict[str, str] = {}
        self.derived: Dict[Tuple[str, str], str] = {}

    def store(self, a: str, b: str, key: str) -> None:
        self.session_keys[session_key_id(a, b)] = key
        self.session_keys[session_key_id(b, a)] = key


class KeyResolutionSession:
    """
    Key resolution for one job view.

    Owns the lock that serializes derivation passes, the keys derived so
    far, and the latest published result. Create one per job being viewed.
    """

    def __init__(
        self,
        job_id: int,
        signer: Optional[Signer] = None,
        content_store: Optional[ContentStore] = None,
    ):
        self.job_id = job_id
        self.signer = signer
        self.content_store = content_store
        self.session_keys: Dict[str, str] = {}
        self.latest: Optional[KeyResolutionResult] = None
        self._lock = asyncio.Lock()
        self._derived: Dict[Tuple[str, str], str] = {}
        self._generation = 0

    @property
    def _signer_address(self) -> str:
        # role addresses in snapshots are checksummed
        return Web3.to_checksum_address(self.signer.address)

    def _ready(
        self,
        events: Sequence[JobEventWithDiffs],
        public_keys: Dict[str, str],
        arbitrator_public_keys: Dict[str, str],
    ) -> bool:
        if not events:
            logger.debug(f"Job {self.job_id}: no events yet, deferring key resolution")
            return False
        if self.signer is None:
            logger.debug(f"Job {self.job_id}: no signer yet, deferring key resolution")
            return False
        if not public_keys:
            logger.debug(f"Job {self.job_id}: public keys not loaded, deferring key resolution")
            return False
        if collect_arbitrator_addresses(events) and not arbitrator_public_keys:
            logger.debug(f"Job {self.job_id}: arbitrator public keys not loaded, deferring key resolution")
            return False
        return True

    async def _derive(self, state: _PassState, counterpart_public_key: Optional[str]) -> Optional[str]:
        if is_empty_public_key(counterpart_public_key):
            return None
        memo_key = (self._signer_address, counterpart_public_key)
        if memo_key in self._derived:
            return self._derived[memo_key]
        if memo_key in state.derived:
            return state.derived[memo_key]
        try:
            key = await self.signer.derive_shared_key(counterpart_public_key, self.job_id)
        except AssertionError:
            raise
        except Exception as e:
            # wallets raise their own error types when the user rejects a request
            logger.warning(
                f"Job {self.job_id}: key derivation failed for {counterpart_public_key[:12]}...: "
                f"{type(e).__name__}: {e}"
            )
            return None
        state.derived[memo_key] = key
        return key

    async def _derive_pass(
        self,
        events: List[JobEventWithDiffs],
        addresses: List[str],
        arbitrators: List[str],
        public_keys: Dict[str, str],
        arbitrator_public_keys: Dict[str, str],
    ) -> Tuple[_PassState, List[JobEventWithDiffs], Dict[int, DisputeDecryptionPath]]:
        state = _PassState()
        owner = events[0].job.roles.creator
        me = self._signer_address
        is_owner = me == owner

        # pairs between the creator and each counterpart
        for address in addresses:
            if address == owner:
                continue
            other = public_keys.get(address) if is_owner else public_keys.get(owner)
            key = await self._derive(state, other)
            if key is not None:
                state.store(owner, address, key)

        # pairs between the creator and each arbitrator
        for arbitrator in arbitrators:
            other = arbitrator_public_keys.get(arbitrator) if is_owner else public_keys.get(owner)
            key = await self._derive(state, other)
            if key is not None:
                state.store(owner, arbitrator, key)

        # open disputes, learning the dispute session key when the viewer is the arbitrator
        dispute_paths: Dict[int, DisputeDecryptionPath] = {}
        resolved = list(events)
        for index, event in enumerate(events):
            if event.event_type != JobEventType.Disputed or not isinstance(event.details, JobDisputedEvent):
                continue
            initiator = event.address
            arbitrator = event.job.roles.arbitrator
            worker = event.job.roles.worker
            if arbitrator == me:
                pair = session_key_id(initiator, arbitrator)
                if pair not in state.session_keys:
                    key = await self._derive(state, public_keys.get(initiator))
                    if key is not None:
                        state.store(initiator, arbitrator, key)
                candidate = state.session_keys.get(pair)
            else:
                candidate = state.session_keys.get(session_key_id(owner, worker))

            resolved[index], outcome = apply_dispute_decryption(event, candidate)
            dispute_paths[index] = outcome.path
            if outcome.session_key:
                counterpart = worker if initiator == owner else owner
                state.store(initiator, counterpart, outcome.session_key)

        # the viewer and the creator, even before any message exists between them
        if not is_owner:
            key = await self._derive(state, public_keys.get(owner))
            if key is not None:
                state.store(owner, me, key)

        return state, resolved, dispute_paths

    async def resolve(
        self,
        events: Sequence[JobEventWithDiffs],
        public_keys: Dict[str, str],
        arbitrator_public_keys: Optional[Dict[str, str]] = None,
    ) -> Optional[KeyResolutionResult]:
        """
        Run one resolution pass over a replayed job.

        Returns None while preconditions are unmet (no events, no signer,
        public keys not loaded). A pass overtaken by a newer call still
        returns its result but does not replace `latest`.
        """
        arbitrator_public_keys = arbitrator_public_keys or {}
        events = list(events)
        if not self._ready(events, public_keys, arbitrator_public_keys):
            return None

        self._generation += 1
        generation = self._generation
        addresses = collect_relevant_addresses(events, self._signer_address)
        arbitrators = collect_arbitrator_addresses(events)

        async with self._lock:
            state, resolved, dispute_paths = await self._derive_pass(
                events, addresses, arbitrators, public_keys, arbitrator_public_keys
            )
            self._derived.update(state.derived)

        logger.debug(
            f"Job {self.job_id}: pass {generation} derived {len(state.derived)} keys, "
            f"{len(state.session_keys)} map entries"
        )

        if self.content_store is not None:
            resolved = await fetch_event_contents(resolved, state.session_keys, self.content_store)

        superseded = generation != self._generation
        result = KeyResolutionResult(
            events=resolved,
            session_keys=state.session_keys,
            dispute_paths=dispute_paths,
            generation=generation,
            superseded=superseded,
        )
        if superseded:
            logger.debug(f"Job {self.job_id}: pass {generation} superseded by pass {self._generation}")
        else:
            self.session_keys.update(state.session_keys)
            self.latest = result
        return result
