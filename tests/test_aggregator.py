"""
Unit tests for daily aggregation.

Tests grouping, totals invariants, filtering, merging and the per-run cache.
"""

import math
from datetime import datetime
from unittest.mock import patch

import pytest

from usage_sync.core import aggregator
from usage_sync.core.aggregator import (
    AggregateCache,
    aggregate_events,
    build_day,
    build_source,
    compute_aggregates,
    filter_aggregates,
    is_iso_date,
    merge_day,
)
from usage_sync.storage.models import UsageEvent


def _event(day, source, model, tokens_in=100, tokens_out=50, cost=0.01, hour=12, **kwargs):
    return UsageEvent(
        timestamp=datetime.fromisoformat(f"{day}T{hour:02d}:00:00"),
        source=source,
        model_id=model,
        input=tokens_in,
        output=tokens_out,
        cost=cost,
        **kwargs,
    )


def _sample_events():
    return [
        _event("2024-01-02", "claude", "sonnet", cost=0.03),
        _event("2024-01-01", "opencode", "sonnet", cost=0.01),
        _event("2024-01-01", "opencode", "sonnet", tokens_in=10, tokens_out=5, cost=0.002, hour=13),
        _event("2024-01-01", "opencode", "gpt-4o", cost=0.02, cache_read=40),
        _event("2024-01-01", "claude", "opus", cost=0.1, reasoning=25),
    ]


def _assert_consistent(day):
    """Totals equal the sum of sources, sources equal the sum of models."""
    sources = list(day.sources.values())
    assert day.totals.tokens == sum(s.tokens for s in sources)
    assert day.totals.messages == sum(s.messages for s in sources)
    assert math.isclose(day.totals.cost, sum(s.cost for s in sources), abs_tol=1e-9)
    for source in sources:
        models = list(source.models.values())
        assert source.tokens == sum(m.tokens for m in models)
        assert source.input == sum(m.input for m in models)
        assert source.cache_read == sum(m.cache_read for m in models)
        assert source.reasoning == sum(m.reasoning for m in models)
        assert math.isclose(source.cost, sum(m.cost for m in models), abs_tol=1e-9)


class TestAggregateEvents:
    """Test grouping of usage events into daily aggregates."""

    def test_groups_by_date_source_and_model(self):
        days = aggregate_events(_sample_events())

        assert [d.date for d in days] == ["2024-01-01", "2024-01-02"]
        first = days[0]
        assert set(first.sources) == {"opencode", "claude"}
        assert set(first.sources["opencode"].models) == {"sonnet", "gpt-4o"}

        sonnet = first.sources["opencode"].models["sonnet"]
        assert sonnet.input == 110
        assert sonnet.output == 55
        assert sonnet.tokens == 165
        assert sonnet.messages == 2
        assert math.isclose(sonnet.cost, 0.012)

    def test_totals_equal_sum_of_sources(self):
        for day in aggregate_events(_sample_events()):
            _assert_consistent(day)

    def test_tokens_include_every_kind(self):
        days = aggregate_events([_event("2024-01-01", "claude", "opus", reasoning=25, cache_write=5)])
        model = days[0].sources["claude"].models["opus"]
        assert model.tokens == 100 + 50 + 25 + 5

    def test_no_events(self):
        assert aggregate_events([]) == []


class TestFilterAggregates:
    """Test re-slicing of computed aggregates."""

    def test_source_filter_rebuilds_totals(self):
        days = filter_aggregates(aggregate_events(_sample_events()), sources=["claude"])

        assert [d.date for d in days] == ["2024-01-01", "2024-01-02"]
        assert set(days[0].sources) == {"claude"}
        assert days[0].totals.tokens == days[0].sources["claude"].tokens
        for day in days:
            _assert_consistent(day)

    def test_model_filter_rebuilds_sources(self):
        days = filter_aggregates(aggregate_events(_sample_events()), models=["sonnet"])

        opencode = days[0].sources["opencode"]
        assert set(opencode.models) == {"sonnet"}
        assert opencode.tokens == opencode.models["sonnet"].tokens
        assert "claude" not in days[0].sources
        for day in days:
            _assert_consistent(day)

    def test_empty_days_are_dropped(self):
        days = filter_aggregates(aggregate_events(_sample_events()), sources=["opencode"])
        assert [d.date for d in days] == ["2024-01-01"]

    def test_date_range_is_inclusive(self):
        base = aggregate_events(_sample_events())
        assert [d.date for d in filter_aggregates(base, since="2024-01-02")] == ["2024-01-02"]
        assert [d.date for d in filter_aggregates(base, until="2024-01-01")] == ["2024-01-01"]
        assert len(filter_aggregates(base, since="2024-01-01", until="2024-01-02")) == 2

    def test_invalid_date_raises(self):
        with pytest.raises(ValueError, match="since"):
            filter_aggregates([], since="2024/01/01")
        with pytest.raises(ValueError, match="until"):
            filter_aggregates([], until="2024-02-30")

    def test_inverted_range_raises(self):
        with pytest.raises(ValueError, match="must not be after"):
            filter_aggregates([], since="2024-02-01", until="2024-01-01")

    def test_compute_aggregates(self):
        days = compute_aggregates(_sample_events(), sources=["claude"], since="2024-01-02")
        assert len(days) == 1
        assert days[0].date == "2024-01-02"
        assert set(days[0].sources) == {"claude"}


class TestMergeDay:
    """Test server-side merging of a day at source granularity."""

    def test_incoming_source_replaces_same_named_source(self):
        existing = aggregate_events(_sample_events())[0]
        incoming = aggregate_events([_event("2024-01-01", "claude", "opus", tokens_in=1, tokens_out=1, cost=5.0)])[0]

        merged = merge_day(existing, incoming)

        assert merged.sources["claude"] == incoming.sources["claude"]
        assert merged.sources["opencode"] == existing.sources["opencode"]
        _assert_consistent(merged)
        assert merged.totals.tokens == existing.sources["opencode"].tokens + 2

    def test_merge_into_nothing(self):
        incoming = aggregate_events(_sample_events())[1]
        assert merge_day(None, incoming) == incoming

    def test_build_day_ignores_stale_totals(self):
        day = aggregate_events(_sample_events())[0]
        rebuilt = build_day(day.date, {"claude": day.sources["claude"]})
        assert rebuilt.totals.tokens == day.sources["claude"].tokens

    def test_build_source_of_no_models(self):
        source = build_source({})
        assert source.tokens == 0
        assert source.cost == 0.0


class TestAggregateCache:
    """Test per-run memoization of aggregates."""

    def test_same_filter_returns_cached_result(self):
        cache = AggregateCache(_sample_events())
        first = cache.get(sources=["claude", "opencode"])
        second = cache.get(sources=["opencode", "claude"])
        assert first is second

    def test_events_aggregated_once(self):
        cache = AggregateCache(_sample_events())
        with patch.object(aggregator, "aggregate_events", wraps=aggregator.aggregate_events) as spy:
            cache.get()
            cache.get(sources=["claude"])
            cache.get(since="2024-01-02")
        assert spy.call_count == 1

    def test_different_filters_are_independent(self):
        cache = AggregateCache(_sample_events())
        assert len(cache.get()) == 2
        assert len(cache.get(sources=["opencode"])) == 1
        assert len(cache.get()) == 2


class TestIsIsoDate:
    """Test calendar date recognition."""

    def test_valid_dates(self):
        assert is_iso_date("2024-02-29")
        assert is_iso_date("1999-12-31")

    def test_invalid_dates(self):
        assert not is_iso_date("2023-02-29")
        assert not is_iso_date("2024-1-01")
        assert not is_iso_date("2024-01-01T00:00:00")
        assert not is_iso_date(20240101)
        assert not is_iso_date(None)
