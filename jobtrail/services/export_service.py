# -*- coding: utf-8 -*-
"""
Export Service Module

Tabular views of a replayed job history for review and CSV export.
"""

import logging
from typing import Iterable, List

import pandas as pd

from .decoders.base import JobEventWithDiffs, json_safe

logger = logging.getLogger(__name__)

EVENT_COLUMNS = ['index', 'type', 'address', 'timestamp', 'state', 'diff_count', 'content']
DIFF_COLUMNS = ['index', 'type', 'address', 'timestamp', 'field', 'old_value', 'new_value']


def _type_name(event: JobEventWithDiffs) -> str:
    event_type = event.event_type
    return event_type.name if event_type is not None else f"Unknown({event.type_})"


def events_to_dataframe(events: Iterable[JobEventWithDiffs]) -> pd.DataFrame:
    """One row per event."""
    rows = [
        {
            'index': i,
            'type': _type_name(event),
            'address': event.address,
            'timestamp': pd.to_datetime(event.timestamp, unit='s', utc=True),
            'state': event.job.state.name,
            'diff_count': len(event.diffs),
            'content': event.content,
        }
        for i, event in enumerate(events)
    ]
    return pd.DataFrame(rows, columns=EVENT_COLUMNS)


def diffs_to_dataframe(events: Iterable[JobEventWithDiffs]) -> pd.DataFrame:
    """One row per field change, in replay order."""
    rows: List[dict] = []
    for i, event in enumerate(events):
        for diff in event.diffs:
            rows.append({
                'index': i,
                'type': _type_name(event),
                'address': event.address,
                'timestamp': pd.to_datetime(event.timestamp, unit='s', utc=True),
                'field': diff.field,
                'old_value': json_safe(diff.old_value),
                'new_value': json_safe(diff.new_value),
            })
    return pd.DataFrame(rows, columns=DIFF_COLUMNS)


def export_diffs_csv(events: Iterable[JobEventWithDiffs], path: str) -> str:
    df = diffs_to_dataframe(events)
    df.to_csv(path, index=False)
    logger.info(f"Exported {len(df)} field changes to {path}")
    return path
