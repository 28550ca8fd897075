"""
Usage event loading.

Reads the usage events exported by the session-log computation engine. The
file is a JSON array of objects::

    {"timestamp": "2024-01-01T10:00:00", "source": "opencode",
     "modelId": "claude-sonnet-4", "cost": 0.01, "messages": 1,
     "tokens": {"input": 60, "output": 40, "cacheRead": 0,
                "cacheWrite": 0, "reasoning": 0}}
"""

import json
import math
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from usage_sync.core.validation import MAX_COUNT
from usage_sync.storage.models import UsageEvent

TOKEN_KEYS = {
    "input": "input",
    "output": "output",
    "cacheRead": "cache_read",
    "cacheWrite": "cache_write",
    "reasoning": "reasoning",
}


def load_usage_events(path: str) -> List[UsageEvent]:
    """Load and validate usage events from a JSON file.

    Args:
        path: Path to the exported events file

    Returns:
        Parsed usage events in file order

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is not valid JSON or an event is malformed
    """
    events_path = Path(path)
    if not events_path.exists():
        raise FileNotFoundError(f"Usage events file not found: {path}")

    with open(events_path, 'r', encoding='utf-8') as f:
        try:
            raw_events = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in usage events file {path}: {e}")

    if not isinstance(raw_events, list):
        raise ValueError("Usage events file must contain a JSON array")

    return [parse_usage_event(raw, index) for index, raw in enumerate(raw_events)]


def parse_usage_event(data: Dict[str, Any], index: int = 0) -> UsageEvent:
    """Parse one exported event, rejecting anything out of range."""
    path = f"events[{index}]"
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be an object")

    for key in ("timestamp", "source", "modelId"):
        if not isinstance(data.get(key), str) or not data[key].strip():
            raise ValueError(f"{path}.{key} is required and must be a non-empty string")

    raw_timestamp = data["timestamp"]
    if raw_timestamp.endswith(("Z", "z")):
        raw_timestamp = raw_timestamp[:-1] + "+00:00"
    try:
        timestamp = datetime.fromisoformat(raw_timestamp)
    except ValueError:
        raise ValueError(f"{path}.timestamp is not an ISO 8601 timestamp")

    tokens = data.get("tokens", {})
    if not isinstance(tokens, dict):
        raise ValueError(f"{path}.tokens must be an object")
    unknown = set(tokens) - set(TOKEN_KEYS)
    if unknown:
        raise ValueError(f"{path}.tokens has unknown keys: {unknown}")

    counts = {}
    for wire, attr in TOKEN_KEYS.items():
        value = tokens.get(wire, 0)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"{path}.tokens.{wire} must be a non-negative integer")
        if value > MAX_COUNT:
            raise ValueError(f"{path}.tokens.{wire} must be at most {MAX_COUNT}")
        counts[attr] = value

    cost = data.get("cost", 0.0)
    if isinstance(cost, bool) or not isinstance(cost, (int, float)) or not math.isfinite(cost) or cost < 0:
        raise ValueError(f"{path}.cost must be a non-negative number")

    messages = data.get("messages", 1)
    if isinstance(messages, bool) or not isinstance(messages, int) or messages < 0:
        raise ValueError(f"{path}.messages must be a non-negative integer")
    if messages > MAX_COUNT:
        raise ValueError(f"{path}.messages must be at most {MAX_COUNT}")

    return UsageEvent(
        timestamp=timestamp,
        source=data["source"],
        model_id=data["modelId"],
        cost=float(cost),
        messages=messages,
        **counts,
    )
