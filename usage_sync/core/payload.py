"""
Submission payload construction.

Builds the ``{meta, summary, years, contributions}`` document the client
sends, with every summary figure derived from the contributions it carries.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from usage_sync import __version__
from usage_sync.storage.models import DailyAggregate


def build_payload(
    aggregates: Iterable[DailyAggregate],
    version: str = __version__,
    generated_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build a self-consistent submission payload.

    Summary and year figures are computed from ``aggregates`` alone, so a
    diff-reduced payload describes only the days it carries.

    Args:
        aggregates: Daily aggregates to send (full set or diff)
        version: Client version recorded in ``meta``
        generated_at: Generation time, defaults to now (UTC)

    Returns:
        JSON-serializable payload dictionary
    """
    days = sorted(aggregates, key=lambda d: d.date)
    generated_at = generated_at or datetime.now(timezone.utc)
    return {
        "meta": {
            "generatedAt": generated_at.isoformat(),
            "version": version,
            "dateRange": {
                "start": days[0].date if days else "",
                "end": days[-1].date if days else "",
            },
        },
        "summary": calculate_summary(days),
        "years": calculate_years(days),
        "contributions": [day.to_dict() for day in days],
    }


def calculate_summary(aggregates: List[DailyAggregate]) -> Dict[str, Any]:
    """Summary statistics over a list of daily aggregates."""
    total_tokens = sum(d.totals.tokens for d in aggregates)
    total_cost = sum(d.totals.cost for d in aggregates)
    active_days = sum(1 for d in aggregates if d.totals.cost > 0)

    sources = set()
    models = set()
    for day in aggregates:
        for source_id, source in day.sources.items():
            sources.add(source_id)
            models.update(source.models)

    return {
        "totalTokens": total_tokens,
        "totalCost": total_cost,
        "totalDays": len(aggregates),
        "activeDays": active_days,
        "averagePerDay": total_cost / active_days if active_days else 0.0,
        "maxCostInSingleDay": max((d.totals.cost for d in aggregates), default=0.0),
        "sources": sorted(sources),
        "models": sorted(models),
    }


def calculate_years(aggregates: List[DailyAggregate]) -> List[Dict[str, Any]]:
    """Per-year token and cost totals with the covered date range."""
    years: Dict[str, Dict[str, Any]] = {}
    for day in aggregates:
        year = years.setdefault(day.date[:4], {
            "year": day.date[:4],
            "totalTokens": 0,
            "totalCost": 0.0,
            "range": {"start": day.date, "end": day.date},
        })
        year["totalTokens"] += day.totals.tokens
        year["totalCost"] += day.totals.cost
        year["range"]["start"] = min(year["range"]["start"], day.date)
        year["range"]["end"] = max(year["range"]["end"], day.date)
    return [years[key] for key in sorted(years)]


def parse_contributions(payload: Dict[str, Any]) -> List[DailyAggregate]:
    """Read the contributions of an already validated payload."""
    return [DailyAggregate.from_dict(day) for day in payload.get("contributions", [])]


def submission_hash(payload: Dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON of the whole payload, for auditing."""
    content = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
