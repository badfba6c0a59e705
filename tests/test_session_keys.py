"""
Unit tests for session key resolution.

Tests:
- Pairwise keys agree on both sides and land in the map under both orders
- Resolution defers until events, signer and public keys are present
- Overlapping passes ask the signer once per counterpart
- The arbitrator recovers the dispute key and reads the conversation
"""
import asyncio
from collections import Counter

import pytest

from helpers import (
    ARBITRATOR,
    CONTENT_HASH,
    CREATED_AT,
    JOB_ID,
    MESSAGE_HASH,
    OUTSIDER,
    OWNER,
    REASON_HASH,
    WORKER,
    basic_job_log,
    encode_job_arbitrated_event,
    encode_job_created_event,
    encode_job_disputed_event,
    encode_job_message_event,
    raw_event,
)

from jobtrail.config.marketplace_config import EMPTY_PUBLIC_KEY, ENCRYPTED_PLACEHOLDER
from jobtrail.services.content_service import InMemoryContentStore
from jobtrail.services.decoders import DisputeDecryptionPath, JobEventType, KeyDerivationError
from jobtrail.services.encryption import encrypt_binary_data, encrypt_utf8_data, session_key_bytes
from jobtrail.services.job_state import compute_job_state_diffs
from jobtrail.services.session_keys import (
    KeyResolutionSession,
    LocalKeySigner,
    collect_arbitrator_addresses,
    collect_relevant_addresses,
    is_empty_public_key,
)


class CountingSigner:
    """Wraps a signer, counting derivations and yielding to the loop on each one."""

    def __init__(self, inner):
        self.inner = inner
        self.address = inner.address
        self.calls = Counter()

    async def derive_shared_key(self, counterpart_public_key, job_id):
        self.calls[counterpart_public_key] += 1
        await asyncio.sleep(0)
        return await self.inner.derive_shared_key(counterpart_public_key, job_id)


class RefusingSigner:
    """Signer whose wallet refuses one counterpart, raising `error`."""

    def __init__(self, inner, refused_public_key, error=None):
        self.inner = inner
        self.address = inner.address
        self.refused_public_key = refused_public_key
        self.error = error or KeyDerivationError("user rejected the request")

    async def derive_shared_key(self, counterpart_public_key, job_id):
        if counterpart_public_key == self.refused_public_key:
            raise self.error
        return await self.inner.derive_shared_key(counterpart_public_key, job_id)


def pair(a, b):
    return f"{a}-{b}"


class LowercaseAddressSigner:
    """Signer reporting its address without the checksum casing."""

    def __init__(self, inner):
        self.inner = inner
        self.address = inner.address.lower()

    async def derive_shared_key(self, counterpart_public_key, job_id):
        return await self.inner.derive_shared_key(counterpart_public_key, job_id)


class Parties:
    """One signer per participant plus their published public keys."""

    def __init__(self):
        self.owner = LocalKeySigner(OWNER)
        self.worker = LocalKeySigner(WORKER)
        self.arbitrator = LocalKeySigner(ARBITRATOR)
        self.public_keys = {
            OWNER: self.owner.public_key,
            WORKER: self.worker.public_key,
            ARBITRATOR: self.arbitrator.public_key,
        }

    def shared(self, a, b):
        return asyncio.run(a.derive_shared_key(b.public_key, JOB_ID))


class TestLocalKeySigner:
    """ECDH-derived session keys."""

    def test_both_sides_derive_the_same_key(self):
        parties = Parties()
        assert parties.shared(parties.owner, parties.worker) == parties.shared(parties.worker, parties.owner)

    def test_key_depends_on_job(self):
        parties = Parties()
        other_job = asyncio.run(parties.owner.derive_shared_key(parties.worker.public_key, JOB_ID + 1))
        assert other_job != parties.shared(parties.owner, parties.worker)

    def test_key_is_usable_session_key(self):
        parties = Parties()
        assert len(session_key_bytes(parties.shared(parties.owner, parties.worker))) == 32

    def test_empty_public_key_raises(self):
        parties = Parties()
        with pytest.raises(KeyDerivationError):
            asyncio.run(parties.owner.derive_shared_key(EMPTY_PUBLIC_KEY, JOB_ID))

    def test_zero_sentinels_are_empty(self):
        assert is_empty_public_key(None)
        assert is_empty_public_key("0x")
        assert is_empty_public_key("0x" + "00" * 33)
        assert not is_empty_public_key(Parties().owner.public_key)


class TestAddressCollection:
    """Parties discovered from the replayed log."""

    def test_relevant_addresses_include_creator_and_viewer(self):
        events = compute_job_state_diffs(basic_job_log(), JOB_ID)
        assert collect_relevant_addresses(events, OUTSIDER) == [WORKER, OWNER, OUTSIDER]

    def test_no_events_no_addresses(self):
        assert collect_relevant_addresses([], OWNER) == []

    def test_arbitrators_skip_zero_address(self):
        assert collect_arbitrator_addresses(compute_job_state_diffs(basic_job_log(), JOB_ID)) == []
        events = compute_job_state_diffs(basic_job_log(arbitrator=ARBITRATOR), JOB_ID)
        assert collect_arbitrator_addresses(events) == [ARBITRATOR]


class TestPreconditions:
    """Resolution returns None until it has what it needs."""

    def setup_method(self):
        self.parties = Parties()
        self.events = compute_job_state_diffs(basic_job_log(), JOB_ID)

    def test_no_events(self):
        session = KeyResolutionSession(JOB_ID, signer=self.parties.owner)
        assert asyncio.run(session.resolve([], self.parties.public_keys)) is None

    def test_no_signer(self):
        session = KeyResolutionSession(JOB_ID)
        assert asyncio.run(session.resolve(self.events, self.parties.public_keys)) is None
        assert session.latest is None

    def test_public_keys_not_loaded(self):
        session = KeyResolutionSession(JOB_ID, signer=self.parties.owner)
        assert asyncio.run(session.resolve(self.events, {})) is None

    def test_arbitrator_keys_not_loaded(self):
        events = compute_job_state_diffs(basic_job_log(arbitrator=ARBITRATOR), JOB_ID)
        session = KeyResolutionSession(JOB_ID, signer=self.parties.owner)
        assert asyncio.run(session.resolve(events, self.parties.public_keys, {})) is None


class TestResolution:
    """Key map contents for owner and worker viewers."""

    def setup_method(self):
        self.parties = Parties()
        self.events = compute_job_state_diffs(basic_job_log(), JOB_ID)

    def test_owner_and_worker_agree(self):
        owner_view = asyncio.run(
            KeyResolutionSession(JOB_ID, signer=self.parties.owner).resolve(self.events, self.parties.public_keys)
        )
        worker_view = asyncio.run(
            KeyResolutionSession(JOB_ID, signer=self.parties.worker).resolve(self.events, self.parties.public_keys)
        )

        expected = self.parties.shared(self.parties.owner, self.parties.worker)
        assert owner_view.session_keys[pair(OWNER, WORKER)] == expected
        assert worker_view.session_keys[pair(OWNER, WORKER)] == expected

    def test_map_is_symmetric(self):
        result = asyncio.run(
            KeyResolutionSession(JOB_ID, signer=self.parties.owner).resolve(self.events, self.parties.public_keys)
        )
        for entry, key in result.session_keys.items():
            a, b = entry.split("-")
            assert result.session_keys[pair(b, a)] == key

    def test_owner_never_pairs_with_itself(self):
        result = asyncio.run(
            KeyResolutionSession(JOB_ID, signer=self.parties.owner).resolve(self.events, self.parties.public_keys)
        )
        assert pair(OWNER, OWNER) not in result.session_keys

    def test_missing_public_key_is_skipped(self):
        signer = CountingSigner(self.parties.owner)
        public_keys = {OWNER: self.parties.owner.public_key, WORKER: EMPTY_PUBLIC_KEY}

        result = asyncio.run(KeyResolutionSession(JOB_ID, signer=signer).resolve(self.events, public_keys))

        assert result.session_keys == {}
        assert sum(signer.calls.values()) == 0

    def test_refused_derivation_is_skipped(self):
        events = compute_job_state_diffs(basic_job_log(arbitrator=ARBITRATOR), JOB_ID)
        signer = RefusingSigner(self.parties.owner, self.parties.worker.public_key)
        arbitrator_keys = {ARBITRATOR: self.parties.arbitrator.public_key}

        result = asyncio.run(
            KeyResolutionSession(JOB_ID, signer=signer).resolve(events, self.parties.public_keys, arbitrator_keys)
        )

        assert pair(OWNER, WORKER) not in result.session_keys
        assert result.session_keys[pair(OWNER, ARBITRATOR)] == self.parties.shared(
            self.parties.owner, self.parties.arbitrator
        )

    def test_wallet_error_skips_only_that_pair(self):
        events = compute_job_state_diffs(basic_job_log(arbitrator=ARBITRATOR), JOB_ID)
        signer = RefusingSigner(
            self.parties.owner,
            self.parties.worker.public_key,
            error=RuntimeError("User rejected the request"),
        )
        session = KeyResolutionSession(JOB_ID, signer=signer)
        arbitrator_keys = {ARBITRATOR: self.parties.arbitrator.public_key}

        result = asyncio.run(session.resolve(events, self.parties.public_keys, arbitrator_keys))

        assert result is not None, "a rejected pair must not abort the pass"
        assert pair(OWNER, WORKER) not in result.session_keys
        assert pair(OWNER, ARBITRATOR) in result.session_keys
        assert session.latest is result

    def test_assertion_from_signer_is_fatal(self):
        signer = RefusingSigner(self.parties.owner, self.parties.worker.public_key, error=AssertionError("bug"))
        session = KeyResolutionSession(JOB_ID, signer=signer)

        with pytest.raises(AssertionError):
            asyncio.run(session.resolve(self.events, self.parties.public_keys))

    def test_lowercase_signer_address_is_recognized_as_owner(self):
        signer = CountingSigner(LowercaseAddressSigner(self.parties.owner))

        result = asyncio.run(KeyResolutionSession(JOB_ID, signer=signer).resolve(self.events, self.parties.public_keys))

        assert result.session_keys[pair(OWNER, WORKER)] == self.parties.shared(self.parties.owner, self.parties.worker)
        assert pair(OWNER, OWNER) not in result.session_keys
        assert self.parties.owner.public_key not in signer.calls

    def test_outsider_gets_pair_with_creator(self):
        outsider = LocalKeySigner(OUTSIDER)
        public_keys = dict(self.parties.public_keys, **{OUTSIDER: outsider.public_key})

        result = asyncio.run(KeyResolutionSession(JOB_ID, signer=outsider).resolve(self.events, public_keys))

        assert result.session_keys[pair(OWNER, OUTSIDER)] == self.parties.shared(self.parties.owner, outsider)


class TestSingleFlight:
    """Overlapping passes on one session."""

    def setup_method(self):
        self.parties = Parties()
        self.events = compute_job_state_diffs(basic_job_log(arbitrator=ARBITRATOR), JOB_ID)
        self.arbitrator_keys = {ARBITRATOR: self.parties.arbitrator.public_key}

    def _resolve_twice(self, session):
        async def both():
            return await asyncio.gather(
                session.resolve(self.events, self.parties.public_keys, self.arbitrator_keys),
                session.resolve(self.events, self.parties.public_keys, self.arbitrator_keys),
            )
        return asyncio.run(both())

    def test_each_counterpart_derived_once(self):
        signer = CountingSigner(self.parties.owner)
        session = KeyResolutionSession(JOB_ID, signer=signer)

        self._resolve_twice(session)

        assert signer.calls[self.parties.worker.public_key] == 1
        assert signer.calls[self.parties.arbitrator.public_key] == 1
        assert set(signer.calls.values()) == {1}

    def test_only_newest_pass_is_published(self):
        session = KeyResolutionSession(JOB_ID, signer=CountingSigner(self.parties.owner))

        first, second = self._resolve_twice(session)

        assert first.superseded is True
        assert second.superseded is False
        assert session.latest is second
        assert first.session_keys == second.session_keys

    def test_later_pass_reuses_derived_keys(self):
        signer = CountingSigner(self.parties.owner)
        session = KeyResolutionSession(JOB_ID, signer=signer)

        async def one_after_another():
            await session.resolve(self.events, self.parties.public_keys, self.arbitrator_keys)
            return await session.resolve(self.events, self.parties.public_keys, self.arbitrator_keys)

        result = asyncio.run(one_after_another())

        assert sum(signer.calls.values()) == 2
        assert result.generation == 2
        assert result.superseded is False


class TestDisputeFlow:
    """A worker-initiated dispute seen by each party."""

    def setup_method(self):
        self.parties = Parties()
        self.owner_worker_key = self.parties.shared(self.parties.owner, self.parties.worker)
        self.worker_arbitrator_key = self.parties.shared(self.parties.worker, self.parties.arbitrator)
        self.owner_arbitrator_key = self.parties.shared(self.parties.owner, self.parties.arbitrator)

        disputed = encode_job_disputed_event(
            encrypt_binary_data(session_key_bytes(self.owner_worker_key), self.worker_arbitrator_key),
            encrypt_utf8_data("deliverable never arrived", self.owner_worker_key),
        )
        self.events = compute_job_state_diffs(basic_job_log(arbitrator=ARBITRATOR) + [
            raw_event(JobEventType.WorkerMessage, encode_job_message_event(MESSAGE_HASH, OWNER),
                      address=WORKER, timestamp=CREATED_AT + 100),
            raw_event(JobEventType.Disputed, disputed, address=WORKER, timestamp=CREATED_AT + 200),
            raw_event(JobEventType.Arbitrated, encode_job_arbitrated_event(),
                      address=ARBITRATOR, timestamp=CREATED_AT + 300),
        ], JOB_ID)

        self.store = InMemoryContentStore()
        self.store.put(CONTENT_HASH, "Fix the login bug".encode('utf-8'))
        self.store.put(MESSAGE_HASH, encrypt_utf8_data("pushed a fix", self.owner_worker_key))
        self.store.put(REASON_HASH, encrypt_utf8_data("split the escrow", self.owner_arbitrator_key))
        self.arbitrator_keys = {ARBITRATOR: self.parties.arbitrator.public_key}

    def _view(self, signer):
        session = KeyResolutionSession(JOB_ID, signer=signer, content_store=self.store)
        return asyncio.run(session.resolve(self.events, self.parties.public_keys, self.arbitrator_keys))

    def test_arbitrator_recovers_dispute_key(self):
        result = self._view(self.parties.arbitrator)

        assert result.dispute_paths == {3: DisputeDecryptionPath.RECOVERED_VIA_ARBITRATOR_KEY}
        assert result.events[3].content == "deliverable never arrived"
        assert result.events[3].session_key == self.owner_worker_key
        assert result.session_keys[pair(WORKER, OWNER)] == self.owner_worker_key
        assert result.session_keys[pair(OWNER, WORKER)] == self.owner_worker_key

    def test_arbitrator_reads_conversation_after_recovery(self):
        result = self._view(self.parties.arbitrator)

        assert result.events[0].content == "Fix the login bug"
        assert result.events[2].content == "pushed a fix"
        assert result.events[4].content == "split the escrow"

    def test_arbitrator_with_lowercase_address_recovers_dispute_key(self):
        result = self._view(LowercaseAddressSigner(self.parties.arbitrator))

        assert result.dispute_paths == {3: DisputeDecryptionPath.RECOVERED_VIA_ARBITRATOR_KEY}
        assert result.events[3].content == "deliverable never arrived"

    def test_owner_uses_direct_key(self):
        result = self._view(self.parties.owner)

        assert result.dispute_paths == {3: DisputeDecryptionPath.USED_DIRECT_KEY}
        assert result.events[3].content == "deliverable never arrived"
        assert result.events[3].session_key is None
        assert result.events[2].content == "pushed a fix"

    def test_outsider_sees_placeholders(self):
        outsider = LocalKeySigner(OUTSIDER)
        self.parties.public_keys[OUTSIDER] = outsider.public_key

        result = self._view(outsider)

        assert result.dispute_paths == {3: DisputeDecryptionPath.FAILED}
        assert result.events[3].content == ENCRYPTED_PLACEHOLDER
        assert result.events[2].content == ENCRYPTED_PLACEHOLDER

    def test_input_events_are_not_enriched_in_place(self):
        self._view(self.parties.arbitrator)
        assert all(event.content is None for event in self.events)

    def test_created_without_body_skips_content(self):
        events = compute_job_state_diffs([
            raw_event(JobEventType.Created, encode_job_created_event()[:10]),
        ], JOB_ID)
        session = KeyResolutionSession(JOB_ID, signer=self.parties.owner, content_store=self.store)

        result = asyncio.run(session.resolve(events, self.parties.public_keys))

        assert result is not None
        assert result.events[0].content is None
        assert self.store.fetch_count == 0
