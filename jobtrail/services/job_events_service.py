"""
Job Events Service

Ties the pipeline together for one viewer: raw events from the indexer
are replayed into diffs, the parties' public keys are looked up, session
keys are resolved and event content is decrypted.
"""

import logging
from typing import Dict, Iterable, List, Optional, Protocol

from .content_service import ContentStore
from .decoders.base import JobEvent, JobEventWithDiffs
from .job_state import compute_job_state_diffs
from .session_keys import (
    KeyResolutionSession,
    PublicKeyDirectory,
    Signer,
    collect_arbitrator_addresses,
    collect_relevant_addresses,
)

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    async def fetch_events(self, job_id: int) -> List[JobEvent]:
        """Raw events for a job in ascending on-chain order."""
        ...


class StaticEventSource:
    """Event source over preloaded events, keyed by job id"""

    def __init__(self, events_by_job: Optional[Dict[int, Iterable[JobEvent]]] = None):
        self._events = {job_id: list(events) for job_id, events in (events_by_job or {}).items()}

    def add(self, event: JobEvent) -> None:
        self._events.setdefault(event.job_id, []).append(event)

    async def fetch_events(self, job_id: int) -> List[JobEvent]:
        return list(self._events.get(job_id, []))


class JobEventsService:
    """Loads a job's replayed, decrypted event history for the local viewer"""

    def __init__(
        self,
        source: EventSource,
        directory: PublicKeyDirectory,
        content_store: Optional[ContentStore] = None,
        signer: Optional[Signer] = None,
    ):
        self.source = source
        self.directory = directory
        self.content_store = content_store
        self.signer = signer
        self._sessions: Dict[int, KeyResolutionSession] = {}

    def session_for(self, job_id: int) -> KeyResolutionSession:
        session = self._sessions.get(job_id)
        if session is None:
            session = KeyResolutionSession(job_id, signer=self.signer, content_store=self.content_store)
            self._sessions[job_id] = session
        return session

    async def load(self, job_id: int) -> List[JobEventWithDiffs]:
        """
        Replay and decrypt a job's events.

        While key resolution defers (no signer, no public keys yet) the
        replayed events are returned without content.
        """
        raw_events = await self.source.fetch_events(job_id)
        events = compute_job_state_diffs(raw_events, job_id)
        if not events:
            return []

        signer_address = self.signer.address if self.signer is not None else None
        addresses = collect_relevant_addresses(events, signer_address)
        arbitrators = collect_arbitrator_addresses(events)
        public_keys = await self.directory.lookup(addresses)
        arbitrator_public_keys = await self.directory.lookup(arbitrators) if arbitrators else {}

        result = await self.session_for(job_id).resolve(events, public_keys, arbitrator_public_keys)
        if result is None:
            logger.info(f"Job {job_id}: {len(events)} events replayed, content not yet available")
            return events
        logger.info(f"Job {job_id}: {len(result.events)} events replayed, {len(result.session_keys)} session keys")
        return result.events
