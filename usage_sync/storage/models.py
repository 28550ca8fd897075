"""
Data models for usage accounting.

Defines the breakdown tree (day -> source -> model) shared by client and
server, and the entities persisted by the server.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


# (wire name, attribute name) for every scalar of a breakdown, in the fixed
# order used by the canonical serialization.
BREAKDOWN_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("tokens", "tokens"),
    ("cost", "cost"),
    ("input", "input"),
    ("output", "output"),
    ("cacheRead", "cache_read"),
    ("cacheWrite", "cache_write"),
    ("reasoning", "reasoning"),
    ("messages", "messages"),
)


@dataclass(frozen=True)
class UsageEvent:
    """One timestamped usage record for a (source, model) pair.

    Produced by the external computation engine that parses session logs;
    this package only consumes it.
    """
    timestamp: datetime
    source: str
    model_id: str
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    reasoning: int = 0
    cost: float = 0.0
    messages: int = 1

    @property
    def date(self) -> str:
        """Calendar day (YYYY-MM-DD) the event is accounted to."""
        return self.timestamp.date().isoformat()

    @property
    def total_tokens(self) -> int:
        return self.input + self.output + self.cache_read + self.cache_write + self.reasoning


@dataclass(frozen=True)
class ModelBreakdown:
    """Usage of one model within one source on one day."""
    tokens: int = 0
    cost: float = 0.0
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    reasoning: int = 0
    messages: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {wire: getattr(self, attr) for wire, attr in BREAKDOWN_FIELDS}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelBreakdown":
        return cls(**_scalars_from_dict(data))


@dataclass(frozen=True)
class SourceBreakdown:
    """One source's contribution for a day.

    Every scalar equals the sum of the same field across ``models``.
    """
    tokens: int = 0
    cost: float = 0.0
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    reasoning: int = 0
    messages: int = 0
    models: Dict[str, ModelBreakdown] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {wire: getattr(self, attr) for wire, attr in BREAKDOWN_FIELDS}
        data["models"] = {model_id: m.to_dict() for model_id, m in self.models.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceBreakdown":
        models = {
            model_id: ModelBreakdown.from_dict(model_data)
            for model_id, model_data in (data.get("models") or {}).items()
        }
        return cls(models=models, **_scalars_from_dict(data))


@dataclass(frozen=True)
class DailyTotals:
    """Day-level totals, always the sum across the day's sources."""
    tokens: int = 0
    cost: float = 0.0
    messages: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"tokens": self.tokens, "cost": self.cost, "messages": self.messages}


@dataclass(frozen=True)
class DailyAggregate:
    """All usage for one calendar day, broken down by source then model."""
    date: str
    totals: DailyTotals
    sources: Dict[str, SourceBreakdown] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "totals": self.totals.to_dict(),
            "sources": {source_id: s.to_dict() for source_id, s in self.sources.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyAggregate":
        totals = data.get("totals") or {}
        return cls(
            date=data["date"],
            totals=DailyTotals(
                tokens=int(totals.get("tokens") or 0),
                cost=float(totals.get("cost") or 0.0),
                messages=int(totals.get("messages") or 0),
            ),
            sources={
                source_id: SourceBreakdown.from_dict(source_data)
                for source_id, source_data in (data.get("sources") or {}).items()
            },
        )


@dataclass(frozen=True)
class ApiToken:
    """Opaque bearer credential bound to one identity."""
    token: str
    user_id: str
    username: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def masked(self) -> str:
        """Token shortened for display; enough to tell tokens apart."""
        return self.token[:10] + "..."

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


@dataclass(frozen=True)
class SubmissionRecord:
    """Current accepted state of one identity's usage.

    Aggregate metrics always describe the stored daily rows, not only the
    latest payload.
    """
    id: str
    user_id: str
    total_tokens: int
    total_cost: float
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    cache_write_tokens: int
    reasoning_tokens: int
    date_start: Optional[str]
    date_end: Optional[str]
    active_days: int
    sources_used: List[str]
    models_used: List[str]
    status: str
    cli_version: Optional[str]
    submission_hash: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class DailyBreakdownRow:
    """Stored mirror of one DailyAggregate under a submission."""
    submission_id: str
    date: str
    tokens: int
    cost: float
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    cache_write_tokens: int
    reasoning_tokens: int
    messages: int
    source_breakdown: Dict[str, SourceBreakdown]
    model_breakdown: Dict[str, int]

    @classmethod
    def from_aggregate(cls, submission_id: str, day: DailyAggregate) -> "DailyBreakdownRow":
        sources = day.sources.values()
        model_breakdown: Dict[str, int] = {}
        for source in sources:
            for model_id, model in source.models.items():
                model_breakdown[model_id] = model_breakdown.get(model_id, 0) + model.tokens
        return cls(
            submission_id=submission_id,
            date=day.date,
            tokens=day.totals.tokens,
            cost=day.totals.cost,
            input_tokens=sum(s.input for s in sources),
            output_tokens=sum(s.output for s in sources),
            cache_read_tokens=sum(s.cache_read for s in sources),
            cache_write_tokens=sum(s.cache_write for s in sources),
            reasoning_tokens=sum(s.reasoning for s in sources),
            messages=day.totals.messages,
            source_breakdown=dict(day.sources),
            model_breakdown=model_breakdown,
        )

    def to_aggregate(self) -> DailyAggregate:
        return DailyAggregate(
            date=self.date,
            totals=DailyTotals(tokens=self.tokens, cost=self.cost, messages=self.messages),
            sources=dict(self.source_breakdown),
        )


def _scalars_from_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Read breakdown scalars from wire form; absent fields count as zero."""
    values: Dict[str, Any] = {}
    for wire, attr in BREAKDOWN_FIELDS:
        raw = data.get(wire) or 0
        values[attr] = float(raw) if wire == "cost" else int(raw)
    return values
