"""
Job Replay - Replay a job's marketplace event log and show what each event changed

Usage:
    python replay_job.py --events job_42.json --job-id 42       # Print diffs
    python replay_job.py --events job_42.json --output diffs.csv  # Export diffs to CSV
    python replay_job.py --events job_42.json --verbose           # Enable debug logging

The events file is a JSON list of indexer rows:
    [{"type_": 0, "data_": "0x...", "address_": "0x...", "timestamp_": 1700000000}, ...]
"""

import sys
import json
import argparse
from datetime import datetime, timezone
from typing import List

# Load environment
from dotenv import load_dotenv
load_dotenv()

from jobtrail.logging_config import get_logger, setup_logging
from jobtrail.services.decoders.base import JobEvent, JobEventWithDiffs, json_safe
from jobtrail.services.decoders import JOB_EVENT_DECODERS
from jobtrail.services.job_state import compute_job_state_diffs
from jobtrail.services.export_service import export_diffs_csv

logger = get_logger("replay_job")


def print_section(title: str):
    """Print a section header"""
    print(f"\n{'=' * 60}")
    print(f" {title}")
    print('=' * 60)


def load_events(path: str, job_id: int) -> List[JobEvent]:
    """Load raw events from a JSON file, in file order"""
    with open(path, 'r', encoding='utf-8') as f:
        rows = json.load(f)
    if isinstance(rows, dict):
        rows = rows.get('events', [])
    events = []
    for row in rows:
        row.setdefault('jobId', job_id)
        events.append(JobEvent.from_dict(row))
    return events


def format_event(index: int, event: JobEventWithDiffs) -> str:
    event_type = event.event_type
    name = event_type.name if event_type is not None else f"Unknown({event.type_})"
    when = datetime.fromtimestamp(event.timestamp, tz=timezone.utc).strftime('%Y-%m-%d %H:%M')
    return f"[{index + 1}] {name} by {event.address[:10]}... at {when}"


def main():
    parser = argparse.ArgumentParser(description='Replay a job event log and print field changes')
    parser.add_argument('--events', '-e', type=str, required=True, help='JSON file of raw job events')
    parser.add_argument('--job-id', type=int, default=0, help='Job id (default: 0)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    parser.add_argument('--output', '-o', type=str, help='Output CSV file path for diffs')
    args = parser.parse_args()

    setup_logging(debug=True if args.verbose else None)

    print_section("JOB EVENT REPLAY")
    try:
        raw_events = load_events(args.events, args.job_id)
    except (OSError, ValueError) as e:
        print(f"[!] Could not load events from {args.events}: {e}")
        sys.exit(1)
    print(f"[+] Loaded {len(raw_events)} events for job {args.job_id}")

    events = compute_job_state_diffs(raw_events, args.job_id)
    undecoded = sum(1 for e in events if e.event_type in JOB_EVENT_DECODERS and e.details is None)
    if undecoded:
        logger.warning(f"{undecoded} events carried payloads that could not be decoded")

    print_section("EVENTS")
    for i, event in enumerate(events):
        print(format_event(i, event))
        if event.event_type is None:
            print("    (unknown event type, no payload interpretation)")
        for diff in event.diffs:
            print(f"    {diff.field}: {json_safe(diff.old_value)} -> {json_safe(diff.new_value)}")

    if events:
        final = events[-1].job
        print_section("CURRENT STATE")
        print(f"State: {final.state.name}")
        print(f"Title: {final.title}")
        print(f"Amount: {final.amount}")
        print(f"Creator: {final.roles.creator}")
        print(f"Worker: {final.roles.worker}")
        print(f"Arbitrator: {final.roles.arbitrator}")

    if args.output:
        export_diffs_csv(events, args.output)
        print(f"\n[+] Diffs exported to: {args.output}")

    print_section("DONE")


if __name__ == "__main__":
    main()
