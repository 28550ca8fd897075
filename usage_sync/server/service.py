"""
Reconciliation service.

Server-side operations behind the two endpoints: deriving fingerprints from
stored rows, and authenticating, validating and persisting submissions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from usage_sync.core.hasher import FingerprintTable, hash_source_breakdown
from usage_sync.core.payload import parse_contributions, submission_hash
from usage_sync.core.validation import validate_submission
from usage_sync.errors import AuthenticationError, ValidationError
from usage_sync.logging import get_logger
from usage_sync.storage.models import ApiToken
from usage_sync.storage.repository import PersistenceMode, SubmissionRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of an accepted submission.

    Metrics describe what is stored after the write, not only the payload.
    """
    submission_id: str
    username: str
    total_tokens: int
    total_cost: float
    date_start: Optional[str]
    date_end: Optional[str]
    active_days: int
    sources: List[str]
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": True,
            "submissionId": self.submission_id,
            "username": self.username,
            "metrics": {
                "totalTokens": self.total_tokens,
                "totalCost": self.total_cost,
                "dateRange": {"start": self.date_start, "end": self.date_end},
                "activeDays": self.active_days,
                "sources": list(self.sources),
            },
        }
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


class ReconciliationService:
    """Fingerprint and submission operations for authenticated identities."""

    def __init__(
        self,
        repository: SubmissionRepository,
        mode: PersistenceMode = PersistenceMode.MERGE,
        high_cost_warning: Optional[float] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.mode = mode
        self.high_cost_warning = high_cost_warning
        self.clock = clock

    def authenticate(self, token: Optional[str]) -> ApiToken:
        """Resolve a bearer token to its identity.

        Raises:
            AuthenticationError: If the token is missing, unknown or expired
        """
        if not token:
            raise AuthenticationError("Missing or invalid Authorization header")
        record = self.repository.get_api_token(token)
        if record is None:
            logger.warning("authentication_rejected", reason="unknown_token")
            raise AuthenticationError("Invalid API token")
        if record.is_expired(self.clock()):
            logger.warning("authentication_rejected", reason="expired_token", user_id=record.user_id)
            raise AuthenticationError("API token has expired")
        return record

    def get_fingerprints(self, token: Optional[str]) -> FingerprintTable:
        """Fingerprint every stored (date, source) of the caller.

        Always recomputed from the stored rows; empty when the caller has
        never submitted.
        """
        identity = self.authenticate(token)
        submission = self.repository.get_submission(identity.user_id)
        if submission is None:
            return {}

        table: FingerprintTable = {}
        for row in self.repository.get_daily_rows(submission.id):
            if row.source_breakdown:
                table[row.date] = {
                    source_id: hash_source_breakdown(source)
                    for source_id, source in row.source_breakdown.items()
                }
        return table

    def submit(self, token: Optional[str], payload: Any) -> SubmitResult:
        """Authenticate, validate and persist a full or diff submission.

        Raises:
            AuthenticationError: If the token is missing, unknown or expired
            ValidationError: If the payload is invalid; nothing is persisted
            PersistenceError: If the write fails; nothing is persisted
        """
        identity = self.authenticate(token)
        now = self.clock()
        self.repository.touch_api_token(identity.token, now)

        report = validate_submission(payload, today=now.date(), high_cost_warning=self.high_cost_warning)
        if not report.valid:
            logger.warning("submission_rejected", user_id=identity.user_id, errors=len(report.errors))
            raise ValidationError("Validation failed", report.details)

        contributions = parse_contributions(payload)
        record = self.repository.save_submission(
            user_id=identity.user_id,
            contributions=contributions,
            submission_hash=submission_hash(payload),
            cli_version=payload["meta"].get("version"),
            mode=self.mode,
            now=now,
        )
        return SubmitResult(
            submission_id=record.id,
            username=identity.username,
            total_tokens=record.total_tokens,
            total_cost=record.total_cost,
            date_start=record.date_start,
            date_end=record.date_end,
            active_days=record.active_days,
            sources=record.sources_used,
            warnings=report.warnings,
        )
