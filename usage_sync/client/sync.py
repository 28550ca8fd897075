"""
Incremental submission workflow.

Fingerprints the local aggregates, compares them with the server's table and
sends only what changed. A failed fingerprint fetch falls back to a full
upload; a failed submit propagates to the caller.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from usage_sync.client.api import UsageSyncClient
from usage_sync.core.diff import DiffMode, DiffResult, compute_diff
from usage_sync.core.hasher import compute_fingerprints
from usage_sync.core.payload import build_payload
from usage_sync.logging import get_logger
from usage_sync.storage.models import DailyAggregate

logger = get_logger(__name__)


class SyncStatus(Enum):
    """Outcome of one sync run."""
    SUBMITTED = "submitted"
    UP_TO_DATE = "up_to_date"
    DRY_RUN = "dry_run"
    NO_DATA = "no_data"


@dataclass(frozen=True)
class SyncOutcome:
    """What a sync run did and, when it submitted, what the server said."""
    status: SyncStatus
    diff: Optional[DiffResult] = None
    payload: Optional[Dict[str, Any]] = None
    response: Dict[str, Any] = field(default_factory=dict)

    @property
    def warnings(self) -> List[str]:
        return list(self.response.get("warnings") or [])


def plan_submission(
    aggregates: List[DailyAggregate],
    client: UsageSyncClient,
    full: bool = False,
) -> DiffResult:
    """Decide what to send.

    Args:
        aggregates: Local daily aggregates
        client: Client used to fetch the server's fingerprints
        full: Skip the fingerprint fetch and send everything

    Returns:
        DiffResult describing the days to transmit
    """
    local = compute_fingerprints(aggregates)
    remote = None if full else client.fetch_fingerprints()
    if remote is None and not full:
        logger.warning("falling_back_to_full_upload", days=len(aggregates))

    diff = compute_diff(aggregates, local, remote)
    logger.info(
        "diff_computed",
        mode=diff.mode.value,
        days=len(diff.contributions),
        changed_sources=diff.changed_pairs,
    )
    return diff


def sync_usage(
    aggregates: List[DailyAggregate],
    client: UsageSyncClient,
    full: bool = False,
    dry_run: bool = False,
) -> SyncOutcome:
    """Run one incremental submission.

    Args:
        aggregates: Local daily aggregates for the selected sources and range
        client: Server client
        full: Send everything without consulting the server's fingerprints
        dry_run: Compute the payload but do not send it

    Returns:
        SyncOutcome; UP_TO_DATE means no request was sent

    Raises:
        NetworkError, AuthenticationError, ValidationError, SubmissionError:
            Propagated from the submit call
    """
    if not aggregates or sum(day.totals.tokens for day in aggregates) == 0:
        return SyncOutcome(status=SyncStatus.NO_DATA)

    diff = plan_submission(aggregates, client, full=full)
    if diff.mode == DiffMode.NOOP:
        return SyncOutcome(status=SyncStatus.UP_TO_DATE, diff=diff)

    payload = build_payload(diff.contributions)
    if dry_run:
        return SyncOutcome(status=SyncStatus.DRY_RUN, diff=diff, payload=payload)

    response = client.submit(payload)
    logger.info("submission_sent", mode=diff.mode.value, submission_id=response.get("submissionId"))
    return SyncOutcome(status=SyncStatus.SUBMITTED, diff=diff, payload=payload, response=response)
