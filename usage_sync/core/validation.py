"""
Submission payload validation.

Checks shape, value ranges and internal consistency of an incoming payload
and collects every problem found, so a rejected client gets the full list in
one round trip. Nothing here touches storage.
"""

import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from usage_sync.core.aggregator import is_iso_date
from usage_sync.storage.models import BREAKDOWN_FIELDS

MAX_REPORTED_ERRORS = 50

# Sums of float costs computed in a different order differ in the last bits.
COST_TOLERANCE = 1e-6

TOKEN_KINDS = ("input", "output", "cacheRead", "cacheWrite", "reasoning")

# Largest value an SQLite INTEGER column holds.
MAX_COUNT = 2 ** 63 - 1


@dataclass
class ValidationReport:
    """Result of validating one payload."""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def details(self) -> List[str]:
        """Errors capped for transport, with a count of the omitted ones."""
        if len(self.errors) <= MAX_REPORTED_ERRORS:
            return list(self.errors)
        omitted = len(self.errors) - MAX_REPORTED_ERRORS
        return self.errors[:MAX_REPORTED_ERRORS] + [f"... and {omitted} more errors"]


def validate_submission(
    payload: Any,
    today: Optional[date] = None,
    high_cost_warning: Optional[float] = None,
) -> ValidationReport:
    """Validate a submission payload.

    Args:
        payload: Decoded JSON body
        today: Reference day for rejecting future dates, defaults to today
        high_cost_warning: Per-day cost above which a warning is emitted

    Returns:
        ValidationReport listing errors and warnings
    """
    report = ValidationReport()
    today = today or date.today()

    if not isinstance(payload, dict):
        report.errors.append("Payload must be a JSON object")
        return report

    for key in ("meta", "summary", "years", "contributions"):
        if key not in payload:
            report.errors.append(f"Missing required field '{key}'")

    meta = payload.get("meta")
    if "meta" in payload and not isinstance(meta, dict):
        report.errors.append("'meta' must be an object")
    elif isinstance(meta, dict) and "version" in meta and not isinstance(meta["version"], str):
        report.errors.append("'meta.version' must be a string")

    if "years" in payload and not isinstance(payload["years"], list):
        report.errors.append("'years' must be an array")

    contributions = payload.get("contributions")
    if "contributions" in payload and not isinstance(contributions, list):
        report.errors.append("'contributions' must be an array")
        return report
    if not isinstance(contributions, list):
        return report

    if not contributions:
        report.warnings.append("Submission contains no contributions")

    latest_allowed = (today + timedelta(days=1)).isoformat()
    seen_dates = set()
    day_tokens = 0
    day_cost = 0.0

    for index, day in enumerate(contributions):
        path = f"contributions[{index}]"
        if not isinstance(day, dict):
            report.errors.append(f"{path} must be an object")
            continue

        day_date = day.get("date")
        if not is_iso_date(day_date):
            report.errors.append(f"{path}.date must be a valid YYYY-MM-DD date")
        else:
            path = f"contributions[{day_date}]"
            if day_date in seen_dates:
                report.errors.append(f"{path}: duplicate date")
            seen_dates.add(day_date)
            if day_date > latest_allowed:
                report.errors.append(f"{path}: date is in the future")

        totals_ok = _validate_day(day, path, report)
        if totals_ok:
            day_tokens += day["totals"]["tokens"]
            day_cost += day["totals"]["cost"]
            if high_cost_warning is not None and day["totals"]["cost"] > high_cost_warning:
                report.warnings.append(
                    f"{path}: unusually high daily cost {day['totals']['cost']:.2f}"
                )

    if day_tokens > MAX_COUNT:
        report.errors.append(f"contributions: total tokens must be at most {MAX_COUNT}")

    summary = payload.get("summary")
    if "summary" in payload and not isinstance(summary, dict):
        report.errors.append("'summary' must be an object")
    elif isinstance(summary, dict) and report.valid:
        _validate_summary(summary, day_tokens, day_cost, report)

    return report


def _validate_day(day: Dict[str, Any], path: str, report: ValidationReport) -> bool:
    """Validate one contribution; True when its totals are usable for sums."""
    before = len(report.errors)

    totals = day.get("totals")
    if not isinstance(totals, dict):
        report.errors.append(f"{path}.totals must be an object")
        totals = None
    else:
        _check_count(totals, "tokens", f"{path}.totals", report)
        _check_cost(totals, "cost", f"{path}.totals", report)
        _check_count(totals, "messages", f"{path}.totals", report)

    sources = day.get("sources")
    if not isinstance(sources, dict) or not sources:
        report.errors.append(f"{path}.sources must be a non-empty object")
        return False

    sources_ok = True
    for source_id, source in sources.items():
        if not _validate_breakdown(source, f"{path}.sources.{source_id}", report, nested=True):
            sources_ok = False

    if totals is None or not sources_ok or len(report.errors) > before:
        return False

    _check_sum(totals["tokens"], [s["tokens"] for s in sources.values()], f"{path}.totals.tokens", report)
    _check_sum(totals["messages"], [s["messages"] for s in sources.values()], f"{path}.totals.messages", report)
    _check_cost_sum(totals["cost"], [s["cost"] for s in sources.values()], f"{path}.totals.cost", report)
    return len(report.errors) == before


def _validate_breakdown(data: Any, path: str, report: ValidationReport, nested: bool) -> bool:
    """Validate a source (nested=True) or model breakdown."""
    if not isinstance(data, dict):
        report.errors.append(f"{path} must be an object")
        return False

    before = len(report.errors)
    for wire, _ in BREAKDOWN_FIELDS:
        if wire == "reasoning" and wire not in data:
            continue
        if wire == "cost":
            _check_cost(data, wire, path, report)
        else:
            _check_count(data, wire, path, report)
    if len(report.errors) > before:
        return False

    kinds = sum(data.get(kind, 0) for kind in TOKEN_KINDS)
    if data["tokens"] != kinds:
        report.errors.append(f"{path}.tokens must equal the sum of its token kinds")

    if not nested:
        return len(report.errors) == before

    models = data.get("models")
    if not isinstance(models, dict) or not models:
        report.errors.append(f"{path}.models must be a non-empty object")
        return False

    models_ok = True
    for model_id, model in models.items():
        if not _validate_breakdown(model, f"{path}.models.{model_id}", report, nested=False):
            models_ok = False
    if not models_ok:
        return False

    for wire, _ in BREAKDOWN_FIELDS:
        values = [m.get(wire, 0) for m in models.values()]
        if wire == "cost":
            _check_cost_sum(data["cost"], values, f"{path}.cost", report)
        else:
            _check_sum(data.get(wire, 0), values, f"{path}.{wire}", report)

    return len(report.errors) == before


def _validate_summary(summary: Dict[str, Any], tokens: int, cost: float, report: ValidationReport) -> None:
    if "totalTokens" in summary:
        if _check_count(summary, "totalTokens", "summary", report):
            _check_sum(summary["totalTokens"], [tokens], "summary.totalTokens", report)
    if "totalCost" in summary:
        if _check_cost(summary, "totalCost", "summary", report):
            _check_cost_sum(summary["totalCost"], [cost], "summary.totalCost", report)


def _check_count(data: Dict[str, Any], key: str, path: str, report: ValidationReport) -> bool:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        report.errors.append(f"{path}.{key} must be a number")
        return False
    if isinstance(value, float) and not value.is_integer():
        report.errors.append(f"{path}.{key} must be an integer")
        return False
    if value < 0:
        report.errors.append(f"{path}.{key} must not be negative")
        return False
    if value > MAX_COUNT:
        report.errors.append(f"{path}.{key} must be at most {MAX_COUNT}")
        return False
    return True


def _check_cost(data: Dict[str, Any], key: str, path: str, report: ValidationReport) -> bool:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        report.errors.append(f"{path}.{key} must be a number")
        return False
    if not math.isfinite(value):
        report.errors.append(f"{path}.{key} must be finite")
        return False
    if value < 0:
        report.errors.append(f"{path}.{key} must not be negative")
        return False
    return True


def _check_sum(expected, parts: List, path: str, report: ValidationReport) -> None:
    if expected != sum(parts):
        report.errors.append(f"{path} is {expected} but its members sum to {sum(parts)}")


def _check_cost_sum(expected: float, parts: List[float], path: str, report: ValidationReport) -> None:
    actual = math.fsum(parts)
    if not math.isclose(expected, actual, rel_tol=1e-9, abs_tol=COST_TOLERANCE):
        report.errors.append(f"{path} is {expected} but its members sum to {actual}")
