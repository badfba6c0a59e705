"""
Session key encryption helpers.

Content is sealed with AES-256-GCM under a 32-byte session key given as
hex. The 12-byte nonce is prepended to the ciphertext:

    sealed = nonce || ciphertext || tag

Dispute records carry a second layer: the dispute's own session key is
sealed under the initiator/arbitrator key, and the dispute content is
sealed under that dispute key. Participants who are not the arbitrator
already hold the content key directly.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .decoders.base import (
    DecryptionError,
    DisputeDecryptionPath,
    JobDisputedEvent,
    JobEventWithDiffs,
)
from ..config.marketplace_config import (
    AES_NONCE_SIZE,
    ENCRYPTED_PLACEHOLDER,
    SESSION_KEY_SIZE,
)

logger = logging.getLogger(__name__)


def session_key_bytes(session_key: Union[str, bytes]) -> bytes:
    """Normalize a hex (0x-optional) or raw session key to 32 bytes."""
    if isinstance(session_key, (bytes, bytearray)):
        key = bytes(session_key)
    else:
        text = session_key[2:] if session_key.startswith(("0x", "0X")) else session_key
        try:
            key = bytes.fromhex(text)
        except ValueError as e:
            raise DecryptionError(f"session key is not hex: {e}") from e
    if len(key) != SESSION_KEY_SIZE:
        raise DecryptionError(f"session key must be {SESSION_KEY_SIZE} bytes, got {len(key)}")
    return key


def encrypt_binary_data(data: bytes, session_key: Union[str, bytes]) -> bytes:
    nonce = os.urandom(AES_NONCE_SIZE)
    return nonce + AESGCM(session_key_bytes(session_key)).encrypt(nonce, bytes(data), None)


def encrypt_utf8_data(text: str, session_key: Union[str, bytes]) -> bytes:
    return encrypt_binary_data(text.encode('utf-8'), session_key)


def decrypt_binary_data(sealed: bytes, session_key: Union[str, bytes]) -> bytes:
    """Open sealed bytes. Raises DecryptionError on a wrong key or malformed input."""
    if session_key is None:
        raise DecryptionError("no session key")
    key = session_key_bytes(session_key)
    if len(sealed) <= AES_NONCE_SIZE:
        raise DecryptionError(f"ciphertext too short ({len(sealed)} bytes)")
    nonce, body = sealed[:AES_NONCE_SIZE], sealed[AES_NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, body, None)
    except InvalidTag as e:
        raise DecryptionError("ciphertext failed authentication") from e


def decrypt_utf8_data(sealed: bytes, session_key: Union[str, bytes]) -> str:
    plaintext = decrypt_binary_data(sealed, session_key)
    try:
        return plaintext.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecryptionError(f"plaintext is not UTF-8: {e}") from e


@dataclass(frozen=True)
class DisputeDecryption:
    path: DisputeDecryptionPath
    content: str
    session_key: Optional[str] = None


def decrypt_job_disputed_event(
    details: JobDisputedEvent,
    candidate_session_key: Optional[str],
) -> DisputeDecryption:
    """
    Open a dispute's content with whatever key the viewer holds.

    First the candidate is tried as the arbitrator's key: it must unwrap
    `encrypted_session_key`, and the unwrapped key opens the content. If
    the unwrap fails, the candidate is used directly on the content, which
    is how the creator and worker read it. If nothing opens, content is
    the placeholder. Once the unwrap succeeds there is no direct-key retry;
    the recovered key is still reported.
    """
    recovered: Optional[str] = None
    try:
        try:
            recovered = "0x" + decrypt_binary_data(details.encrypted_session_key, candidate_session_key).hex()
            decryption_key = recovered
            path = DisputeDecryptionPath.RECOVERED_VIA_ARBITRATOR_KEY
        except DecryptionError:
            decryption_key = candidate_session_key
            path = DisputeDecryptionPath.USED_DIRECT_KEY
        content = decrypt_utf8_data(details.encrypted_content, decryption_key)
    except DecryptionError as e:
        logger.debug(f"Dispute content stays encrypted: {e}")
        return DisputeDecryption(DisputeDecryptionPath.FAILED, ENCRYPTED_PLACEHOLDER, recovered)
    return DisputeDecryption(path, content, recovered)


def apply_dispute_decryption(
    event: JobEventWithDiffs,
    candidate_session_key: Optional[str],
) -> Tuple[JobEventWithDiffs, DisputeDecryption]:
    """Decrypt a replayed Disputed event, returning an enriched copy and the outcome."""
    if not isinstance(event.details, JobDisputedEvent):
        raise TypeError(f"expected a Disputed event, got {type(event.details).__name__}")
    result = decrypt_job_disputed_event(event.details, candidate_session_key)
    return event.with_content(result.content, result.session_key), result


def session_key_id(a: str, b: str) -> str:
    """Session key map entry for the ordered pair (a, b)."""
    return f"{a}-{b}"
