"""
Job state replay.

Rebuilds a job from its ordered event log. Each event is decoded, applied
to a running Job snapshot, and emitted with a copy of the snapshot as of
that event plus the list of fields it changed. Events must arrive in
on-chain order; nothing here re-sorts them.
"""

from copy import deepcopy
from dataclasses import fields
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from .decoders.base import (
    JOB_METADATA_FIELDS,
    Job,
    JobCreatedEvent,
    JobEvent,
    JobEventDiff,
    JobEventType,
    JobEventWithDiffs,
    JobRoles,
    JobState,
    JobUpdatedEvent,
)
from .decoders.cursor import ByteCursor, decode_bytes32
from .decoders.job_event_decoder import JOB_EVENT_DECODERS, try_decode_job_event
from ..config.marketplace_config import (
    CLOSE_COLLATERAL_WINDOW,
    HASH_SIZE,
    ZERO_ADDRESS,
    ZERO_HASH,
)

logger = logging.getLogger(__name__)


def _flatten(job: Job) -> Dict[str, Any]:
    """Diffable view of a snapshot: roles become roles.<name>, metadata is dropped."""
    flat: Dict[str, Any] = {}
    for f in fields(job):
        if f.name in JOB_METADATA_FIELDS:
            continue
        value = getattr(job, f.name)
        if isinstance(value, JobRoles):
            for role in fields(value):
                flat[f"roles.{role.name}"] = getattr(value, role.name)
        elif isinstance(value, list):
            flat[f.name] = tuple(value)
        else:
            flat[f.name] = value
    return flat


def compute_diffs(previous: Job, current: Job) -> Tuple[JobEventDiff, ...]:
    before = _flatten(previous)
    after = _flatten(current)
    return tuple(
        JobEventDiff(field=name, old_value=before[name], new_value=after[name])
        for name in after
        if before[name] != after[name]
    )


def _escrow_id(data: bytes) -> int:
    return int.from_bytes(data, 'big') if data else 0


def _result_hash(data: bytes) -> str:
    if len(data) < HASH_SIZE:
        return ZERO_HASH
    return decode_bytes32(ByteCursor(data))


def _apply_created(job: Job, event: JobEvent, details: JobCreatedEvent) -> None:
    job.title = details.title
    job.content_hash = details.content_hash
    job.multiple_applicants = details.multiple_applicants
    job.tags = list(details.tags)
    job.token = details.token
    job.amount = details.amount
    job.max_time = details.max_time
    job.delivery_method = details.delivery_method
    job.roles.arbitrator = details.arbitrator
    job.whitelist_workers = details.whitelist_workers
    job.roles.creator = event.address
    job.state = JobState.Open
    job.escrow_id = 0
    job.result_hash = ZERO_HASH
    job.rating = 0
    job.disputed = False
    job.timestamp = event.timestamp
    job.allowed_workers = []
    job.collateral_owed = 0


def _apply_updated(job: Job, details: JobUpdatedEvent) -> None:
    if details.amount < job.amount:
        job.collateral_owed += job.amount - details.amount
    elif details.amount > job.amount:
        job.collateral_owed = max(0, job.collateral_owed - (details.amount - job.amount))
    job.title = details.title
    job.content_hash = details.content_hash
    job.tags = list(details.tags)
    job.amount = details.amount
    job.max_time = details.max_time
    job.roles.arbitrator = details.arbitrator
    job.whitelist_workers = details.whitelist_workers


def apply_event(job: Job, event: JobEvent, details) -> None:
    """
    Mutate `job` in place for one event.

    `details` is the decoded payload (None when the type has no body or the
    body did not decode). Typed events whose body failed to decode change
    nothing.
    """
    event_type = event.event_type
    if event_type is None:
        return
    if event_type in JOB_EVENT_DECODERS and details is None:
        return

    if event_type == JobEventType.Created:
        _apply_created(job, event, details)
    elif event_type in (JobEventType.Taken, JobEventType.Paid):
        job.roles.worker = event.address
        job.escrow_id = _escrow_id(event.data)
        job.state = JobState.Taken
    elif event_type == JobEventType.Updated:
        _apply_updated(job, details)
    elif event_type == JobEventType.Completed:
        job.state = JobState.Closed
    elif event_type == JobEventType.Delivered:
        job.result_hash = _result_hash(event.data)
    elif event_type == JobEventType.Closed:
        if event.timestamp - job.timestamp < CLOSE_COLLATERAL_WINDOW:
            job.collateral_owed += job.amount
        job.state = JobState.Closed
    elif event_type == JobEventType.Reopened:
        job.state = JobState.Open
        job.result_hash = ZERO_HASH
        job.collateral_owed = max(0, job.collateral_owed - job.amount)
    elif event_type == JobEventType.Rated:
        job.rating = details.rating
    elif event_type == JobEventType.Refunded:
        if job.roles.worker in job.allowed_workers:
            job.allowed_workers = [w for w in job.allowed_workers if w != job.roles.worker]
        job.roles.worker = ZERO_ADDRESS
        job.escrow_id = 0
        job.state = JobState.Open
    elif event_type == JobEventType.Disputed:
        job.disputed = True
    elif event_type == JobEventType.Arbitrated:
        job.state = JobState.Closed
    elif event_type == JobEventType.ArbitrationRefused:
        job.roles.arbitrator = ZERO_ADDRESS
    elif event_type == JobEventType.WhitelistedWorkerAdded:
        if event.address not in job.allowed_workers:
            job.allowed_workers = job.allowed_workers + [event.address]
    elif event_type == JobEventType.WhitelistedWorkerRemoved:
        job.allowed_workers = [w for w in job.allowed_workers if w != event.address]
    elif event_type == JobEventType.CollateralWithdrawn:
        job.collateral_owed = 0
    # Signed, WorkerMessage and OwnerMessage leave job fields as they are


def compute_job_state_diffs(
    events: Iterable[JobEvent],
    job_id: int,
    job: Optional[Job] = None,
) -> List[JobEventWithDiffs]:
    """
    Replay `events` for one job.

    Args:
        events: Raw events in ascending on-chain order
        job_id: Job identifier stamped on every snapshot
        job: Optional starting snapshot (copied, never mutated)

    Returns:
        One JobEventWithDiffs per input event, in the same order
    """
    current = deepcopy(job) if job is not None else Job()
    current.id = job_id
    result: List[JobEventWithDiffs] = []

    for event in events:
        previous = deepcopy(current)
        details = try_decode_job_event(event.type_, event.data)
        if details is None and event.event_type in JOB_EVENT_DECODERS:
            logger.debug(f"Job {job_id}: {event.event_type.name} event at {event.timestamp} has an unreadable payload")

        current.id = job_id
        current.last_event_timestamp = event.timestamp
        apply_event(current, event, details)

        diffs = compute_diffs(previous, current)
        result.append(JobEventWithDiffs(
            event=event,
            details=details,
            job=deepcopy(current),
            diffs=diffs,
        ))

    logger.debug(f"Job {job_id}: replayed {len(result)} events")
    return result
