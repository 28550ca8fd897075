"""
Daily usage aggregation.

Folds usage events into per-day, per-source, per-model breakdowns. Totals are
a pure function of the current members: every helper here rebuilds them from
scratch instead of patching running counters, so filtering or merging can
never leave a stale total behind.
"""

import re
from dataclasses import dataclass
from datetime import date as date_type
from typing import Dict, Iterable, List, Optional, Tuple

from usage_sync.storage.models import (
    DailyAggregate,
    DailyTotals,
    ModelBreakdown,
    SourceBreakdown,
    UsageEvent,
)

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def aggregate_events(events: Iterable[UsageEvent]) -> List[DailyAggregate]:
    """Group usage events into daily aggregates.

    Args:
        events: Usage events in any order

    Returns:
        One DailyAggregate per day that has events, sorted by date
    """
    # date -> source -> model -> accumulated model breakdown
    grouped: Dict[str, Dict[str, Dict[str, ModelBreakdown]]] = {}

    for event in events:
        models = grouped.setdefault(event.date, {}).setdefault(event.source, {})
        previous = models.get(event.model_id, ModelBreakdown())
        models[event.model_id] = ModelBreakdown(
            tokens=previous.tokens + event.total_tokens,
            cost=previous.cost + event.cost,
            input=previous.input + event.input,
            output=previous.output + event.output,
            cache_read=previous.cache_read + event.cache_read,
            cache_write=previous.cache_write + event.cache_write,
            reasoning=previous.reasoning + event.reasoning,
            messages=previous.messages + event.messages,
        )

    return [
        build_day(day, {source_id: build_source(models) for source_id, models in sources.items()})
        for day, sources in sorted(grouped.items())
    ]


def build_source(models: Dict[str, ModelBreakdown]) -> SourceBreakdown:
    """Build a source breakdown whose scalars are the sums over its models."""
    members = list(models.values())
    return SourceBreakdown(
        tokens=sum(m.tokens for m in members),
        cost=sum(m.cost for m in members),
        input=sum(m.input for m in members),
        output=sum(m.output for m in members),
        cache_read=sum(m.cache_read for m in members),
        cache_write=sum(m.cache_write for m in members),
        reasoning=sum(m.reasoning for m in members),
        messages=sum(m.messages for m in members),
        models=dict(models),
    )


def build_day(date: str, sources: Dict[str, SourceBreakdown]) -> DailyAggregate:
    """Build a daily aggregate whose totals are the sums over its sources."""
    members = list(sources.values())
    totals = DailyTotals(
        tokens=sum(s.tokens for s in members),
        cost=sum(s.cost for s in members),
        messages=sum(s.messages for s in members),
    )
    return DailyAggregate(date=date, totals=totals, sources=dict(sources))


def filter_aggregates(
    aggregates: Iterable[DailyAggregate],
    since: Optional[str] = None,
    until: Optional[str] = None,
    sources: Optional[Iterable[str]] = None,
    models: Optional[Iterable[str]] = None,
) -> List[DailyAggregate]:
    """Re-slice computed aggregates and rebuild everything that was touched.

    Args:
        aggregates: Previously computed daily aggregates
        since: Inclusive lower date bound (YYYY-MM-DD)
        until: Inclusive upper date bound (YYYY-MM-DD)
        sources: Keep only these source ids
        models: Keep only these model ids

    Returns:
        Rebuilt aggregates; days and sources left empty are dropped
    """
    _check_date_bounds(since, until)
    source_filter = set(sources) if sources is not None else None
    model_filter = set(models) if models is not None else None

    result = []
    for day in aggregates:
        if since is not None and day.date < since:
            continue
        if until is not None and day.date > until:
            continue

        kept_sources: Dict[str, SourceBreakdown] = {}
        for source_id, source in day.sources.items():
            if source_filter is not None and source_id not in source_filter:
                continue
            if model_filter is None:
                kept_sources[source_id] = build_source(source.models)
                continue
            kept_models = {
                model_id: model
                for model_id, model in source.models.items()
                if model_id in model_filter
            }
            if kept_models:
                kept_sources[source_id] = build_source(kept_models)

        if kept_sources:
            result.append(build_day(day.date, kept_sources))

    return sorted(result, key=lambda d: d.date)


def compute_aggregates(
    events: Iterable[UsageEvent],
    sources: Optional[Iterable[str]] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
) -> List[DailyAggregate]:
    """Compute daily aggregates for the selected sources and date range."""
    return filter_aggregates(aggregate_events(events), since=since, until=until, sources=sources)


def merge_day(existing: Optional[DailyAggregate], incoming: DailyAggregate) -> DailyAggregate:
    """Merge an incoming day into a stored one at source granularity.

    Sources named by ``incoming`` replace the stored ones with the same id;
    every other stored source is kept untouched. Totals are rebuilt from the
    merged membership.
    """
    merged: Dict[str, SourceBreakdown] = dict(existing.sources) if existing else {}
    merged.update(incoming.sources)
    return build_day(incoming.date, merged)


@dataclass
class AggregateCache:
    """Per-invocation memo of filtered aggregates.

    Created by the caller for one run and passed where it is needed, so no
    computed data outlives the invocation.
    """
    events: List[UsageEvent]

    def __post_init__(self):
        self._base: Optional[List[DailyAggregate]] = None
        self._filtered: Dict[Tuple, List[DailyAggregate]] = {}

    def get(
        self,
        since: Optional[str] = None,
        until: Optional[str] = None,
        sources: Optional[Iterable[str]] = None,
        models: Optional[Iterable[str]] = None,
    ) -> List[DailyAggregate]:
        """Return aggregates for a filter, computing them at most once."""
        key = (
            since,
            until,
            tuple(sorted(sources)) if sources is not None else None,
            tuple(sorted(models)) if models is not None else None,
        )
        if key not in self._filtered:
            if self._base is None:
                self._base = aggregate_events(self.events)
            self._filtered[key] = filter_aggregates(
                self._base, since=since, until=until, sources=sources, models=models
            )
        return self._filtered[key]


def is_iso_date(value: object) -> bool:
    """True for a real calendar date written as YYYY-MM-DD."""
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        return False
    try:
        date_type.fromisoformat(value)
    except ValueError:
        return False
    return True


def _check_date_bounds(since: Optional[str], until: Optional[str]) -> None:
    for label, value in (("since", since), ("until", until)):
        if value is not None and not is_iso_date(value):
            raise ValueError(f"'{label}' must be a date in YYYY-MM-DD format, got {value!r}")
    if since is not None and until is not None and since > until:
        raise ValueError("'since' must not be after 'until'")
