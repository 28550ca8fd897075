"""
Content fingerprints for source breakdowns.

Client and server both derive fingerprints from breakdown content and compare
them to decide what needs resending, so the canonical form below has to match
byte for byte on both sides of the wire:

1. models ordered by key (UTF-16 code-unit order)
2. cost as fixed-point ``round(cost * 10000)``, rounding halves up
3. fields emitted in a fixed order as compact JSON
4. djb2-style rolling hash (``h * 33 + c``) over the UTF-16 code units,
   wrapped to signed 32 bits, rendered as 8 lowercase hex digits of abs(h)

The digest detects change; it is not a security primitive.
"""

import json
import math
from typing import Dict, Iterable

from usage_sync.storage.models import DailyAggregate, SourceBreakdown

# date -> source id -> fingerprint
FingerprintTable = Dict[str, Dict[str, str]]

COST_SCALE = 10000
HASH_SEED = 5381


def hash_source_breakdown(breakdown: SourceBreakdown) -> str:
    """Fingerprint one source breakdown.

    Args:
        breakdown: Source breakdown including its per-model breakdown

    Returns:
        8-character lowercase hex fingerprint
    """
    return _digest(canonicalize(breakdown))


def canonicalize(breakdown: SourceBreakdown) -> str:
    """Serialize a breakdown into its canonical string form."""
    models = {
        model_id: _normalize(breakdown.models[model_id])
        for model_id in sorted(breakdown.models, key=_utf16_sort_key)
    }
    normalized = _normalize(breakdown)
    normalized["models"] = models
    return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)


def compute_fingerprints(aggregates: Iterable[DailyAggregate]) -> FingerprintTable:
    """Fingerprint every (date, source) of a set of daily aggregates."""
    table: FingerprintTable = {}
    for day in aggregates:
        table[day.date] = {
            source_id: hash_source_breakdown(source)
            for source_id, source in day.sources.items()
        }
    return table


def fixed_point_cost(cost: float) -> int:
    """Cost as an integer number of ten-thousandths, halves rounded up."""
    return int(math.floor(cost * COST_SCALE + 0.5))


def _normalize(breakdown) -> Dict[str, int]:
    """Scalars of a model or source breakdown in canonical field order."""
    return {
        "tokens": int(breakdown.tokens),
        "cost": fixed_point_cost(breakdown.cost),
        "input": int(breakdown.input),
        "output": int(breakdown.output),
        "cacheRead": int(breakdown.cache_read),
        "cacheWrite": int(breakdown.cache_write),
        "reasoning": int(breakdown.reasoning or 0),
        "messages": int(breakdown.messages),
    }


def _digest(content: str) -> str:
    value = HASH_SEED
    for unit in _utf16_units(content):
        value = (value * 33 + unit) & 0xFFFFFFFF
    if value & 0x80000000:
        value -= 0x100000000
    return format(abs(value), "x").zfill(8)


def _utf16_units(content: str):
    encoded = content.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(encoded), 2):
        yield encoded[i] | (encoded[i + 1] << 8)


def _utf16_sort_key(key: str) -> bytes:
    return key.encode("utf-16-be", "surrogatepass")
