"""
Fingerprint diffing between local data and server state.

Only additions and modifications are detected. A source that was submitted
before but is missing from the local computation produces no signal at all,
so the server keeps it; propagating removals would need an explicit
tombstone in the protocol, absence is never treated as deletion.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from usage_sync.core.aggregator import build_day
from usage_sync.core.hasher import FingerprintTable
from usage_sync.storage.models import DailyAggregate


class DiffMode(Enum):
    """What the client has to send after comparing fingerprints."""
    FULL = "full"  # No usable remote state: send everything
    DIFF = "diff"  # Send only changed (date, source) entries
    NOOP = "noop"  # Server already up to date


@dataclass(frozen=True)
class DiffResult:
    """Outcome of a diff: the mode plus the days to transmit."""
    mode: DiffMode
    contributions: List[DailyAggregate]
    changed: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def changed_pairs(self) -> int:
        return sum(len(sources) for sources in self.changed.values())


def compute_diff(
    aggregates: List[DailyAggregate],
    local: FingerprintTable,
    remote: Optional[FingerprintTable],
) -> DiffResult:
    """Reduce local aggregates to what the server does not have yet.

    Args:
        aggregates: Local daily aggregates the fingerprints were computed from
        local: Fingerprints of ``aggregates``
        remote: Fingerprints fetched from the server; None when the fetch failed

    Returns:
        DiffResult in FULL mode when ``remote`` is missing or empty, NOOP when
        nothing changed, otherwise DIFF with each changed day carrying only
        its changed sources and totals rebuilt from them
    """
    if not remote:
        changed = {day.date: sorted(day.sources) for day in aggregates}
        return DiffResult(mode=DiffMode.FULL, contributions=list(aggregates), changed=changed)

    contributions = []
    changed = {}
    for day in aggregates:
        local_day = local.get(day.date, {})
        remote_day = remote.get(day.date, {})

        changed_sources = {
            source_id: source
            for source_id, source in day.sources.items()
            if local_day.get(source_id) is None or local_day.get(source_id) != remote_day.get(source_id)
        }
        if changed_sources:
            contributions.append(build_day(day.date, changed_sources))
            changed[day.date] = sorted(changed_sources)

    if not contributions:
        return DiffResult(mode=DiffMode.NOOP, contributions=[])
    return DiffResult(mode=DiffMode.DIFF, contributions=contributions, changed=changed)
