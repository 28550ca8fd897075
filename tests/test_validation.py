"""
Unit tests for submission payload validation.

Tests that every problem is reported and that consistent payloads pass.
"""

import copy
from datetime import date, datetime

from usage_sync.core.aggregator import aggregate_events
from usage_sync.core.payload import build_payload
from usage_sync.core.validation import MAX_COUNT, MAX_REPORTED_ERRORS, validate_submission
from usage_sync.storage.models import UsageEvent

TODAY = date(2024, 6, 1)


def _payload():
    events = [
        UsageEvent(datetime(2024, 5, 30, 10), "opencode", "sonnet", input=100, output=40, cost=0.012),
        UsageEvent(datetime(2024, 5, 30, 11), "opencode", "gpt-4o", input=10, output=5, cache_read=7, cost=0.001),
        UsageEvent(datetime(2024, 5, 31, 9), "claude", "opus", input=300, output=90, reasoning=12, cost=0.4),
    ]
    return build_payload(aggregate_events(events))


class TestValidPayloads:
    """Test payloads that must be accepted."""

    def test_built_payload_is_valid(self):
        report = validate_submission(_payload(), today=TODAY)
        assert report.valid
        assert report.errors == []
        assert report.warnings == []

    def test_date_one_day_ahead_is_tolerated(self):
        """Clients in later timezones may already be on tomorrow."""
        payload = _payload()
        payload["contributions"][1]["date"] = "2024-06-02"
        assert validate_submission(payload, today=TODAY).valid

    def test_model_without_reasoning_is_valid(self):
        payload = _payload()
        model = payload["contributions"][0]["sources"]["opencode"]["models"]["sonnet"]
        del model["reasoning"]
        assert validate_submission(payload, today=TODAY).valid

    def test_empty_contributions_warns(self):
        report = validate_submission(build_payload([]), today=TODAY)
        assert report.valid
        assert report.warnings == ["Submission contains no contributions"]

    def test_high_daily_cost_warns(self):
        report = validate_submission(_payload(), today=TODAY, high_cost_warning=0.1)
        assert report.valid
        assert len(report.warnings) == 1
        assert "2024-05-31" in report.warnings[0]


class TestStructureErrors:
    """Test shape and type problems."""

    def test_not_an_object(self):
        report = validate_submission([1, 2], today=TODAY)
        assert report.errors == ["Payload must be a JSON object"]

    def test_missing_required_fields(self):
        report = validate_submission({"contributions": []}, today=TODAY)
        assert "Missing required field 'meta'" in report.errors
        assert "Missing required field 'summary'" in report.errors
        assert "Missing required field 'years'" in report.errors

    def test_contributions_not_a_list(self):
        payload = _payload()
        payload["contributions"] = {"2024-05-30": {}}
        report = validate_submission(payload, today=TODAY)
        assert "'contributions' must be an array" in report.errors

    def test_bad_date(self):
        payload = _payload()
        payload["contributions"][0]["date"] = "30/05/2024"
        report = validate_submission(payload, today=TODAY)
        assert "contributions[0].date must be a valid YYYY-MM-DD date" in report.errors

    def test_duplicate_date(self):
        payload = _payload()
        payload["contributions"][1]["date"] = "2024-05-30"
        report = validate_submission(payload, today=TODAY)
        assert "contributions[2024-05-30]: duplicate date" in report.errors

    def test_future_date(self):
        payload = _payload()
        payload["contributions"][1]["date"] = "2024-06-03"
        report = validate_submission(payload, today=TODAY)
        assert "contributions[2024-06-03]: date is in the future" in report.errors

    def test_empty_sources(self):
        payload = _payload()
        payload["contributions"][0]["sources"] = {}
        report = validate_submission(payload, today=TODAY)
        assert "contributions[2024-05-30].sources must be a non-empty object" in report.errors

    def test_empty_models(self):
        payload = _payload()
        payload["contributions"][1]["sources"]["claude"]["models"] = {}
        report = validate_submission(payload, today=TODAY)
        assert "contributions[2024-05-31].sources.claude.models must be a non-empty object" in report.errors


class TestValueErrors:
    """Test range and consistency problems."""

    def test_negative_cost(self):
        payload = _payload()
        payload["contributions"][1]["sources"]["claude"]["models"]["opus"]["cost"] = -1.0
        report = validate_submission(payload, today=TODAY)
        assert "contributions[2024-05-31].sources.claude.models.opus.cost must not be negative" in report.errors

    def test_fractional_token_count(self):
        payload = _payload()
        payload["contributions"][1]["totals"]["tokens"] = 402.5
        report = validate_submission(payload, today=TODAY)
        assert "contributions[2024-05-31].totals.tokens must be an integer" in report.errors

    def test_token_count_above_storage_range(self):
        payload = _payload()
        payload["contributions"][1]["totals"]["tokens"] = 2 ** 63
        report = validate_submission(payload, today=TODAY)
        assert "contributions[2024-05-31].totals.tokens must be at most 9223372036854775807" in report.errors

    def test_integral_float_above_storage_range(self):
        payload = _payload()
        payload["contributions"][1]["totals"]["messages"] = 1e20
        report = validate_submission(payload, today=TODAY)
        assert "contributions[2024-05-31].totals.messages must be at most 9223372036854775807" in report.errors

    def test_largest_storable_count_is_accepted(self):
        events = [UsageEvent(datetime(2024, 5, 30, 10), "opencode", "sonnet", input=MAX_COUNT)]
        assert validate_submission(build_payload(aggregate_events(events)), today=TODAY).valid

    def test_total_across_days_above_storage_range(self):
        events = [
            UsageEvent(datetime(2024, 5, 30, 10), "opencode", "sonnet", input=MAX_COUNT),
            UsageEvent(datetime(2024, 5, 31, 10), "opencode", "sonnet", input=1),
        ]
        report = validate_submission(build_payload(aggregate_events(events)), today=TODAY)
        assert "contributions: total tokens must be at most 9223372036854775807" in report.errors

    def test_boolean_is_not_a_number(self):
        payload = _payload()
        payload["contributions"][1]["totals"]["messages"] = True
        report = validate_submission(payload, today=TODAY)
        assert "contributions[2024-05-31].totals.messages must be a number" in report.errors

    def test_tokens_must_equal_token_kinds(self):
        payload = _payload()
        model = payload["contributions"][1]["sources"]["claude"]["models"]["opus"]
        model["tokens"] += 1
        report = validate_submission(payload, today=TODAY)
        assert "contributions[2024-05-31].sources.claude.models.opus.tokens must equal the sum of its token kinds" in report.errors

    def test_source_must_equal_sum_of_models(self):
        payload = _payload()
        source = payload["contributions"][0]["sources"]["opencode"]
        source["input"] += 5
        source["tokens"] += 5
        report = validate_submission(payload, today=TODAY)
        assert any(e.startswith("contributions[2024-05-30].sources.opencode.input is") for e in report.errors)

    def test_day_totals_must_equal_sum_of_sources(self):
        payload = _payload()
        payload["contributions"][0]["totals"]["cost"] = 5.0
        report = validate_submission(payload, today=TODAY)
        assert len(report.errors) == 1
        assert report.errors[0].startswith("contributions[2024-05-30].totals.cost is 5.0")

    def test_summary_must_match_contributions(self):
        payload = _payload()
        payload["summary"]["totalTokens"] = 1
        report = validate_submission(payload, today=TODAY)
        assert len(report.errors) == 1
        assert report.errors[0].startswith("summary.totalTokens is 1")

    def test_all_errors_are_collected(self):
        payload = _payload()
        payload["contributions"][0]["date"] = "bad"
        payload["contributions"][1]["sources"]["claude"]["cost"] = "free"
        report = validate_submission(payload, today=TODAY)
        assert len(report.errors) == 2


class TestReportDetails:
    """Test capping of reported errors."""

    def test_details_are_capped(self):
        payload = _payload()
        day = payload["contributions"][0]
        payload["contributions"] = []
        for i in range(MAX_REPORTED_ERRORS + 10):
            bad = copy.deepcopy(day)
            bad["date"] = f"not-a-date-{i}"
            payload["contributions"].append(bad)

        report = validate_submission(payload, today=TODAY)

        assert not report.valid
        assert len(report.errors) == MAX_REPORTED_ERRORS + 10
        assert len(report.details) == MAX_REPORTED_ERRORS + 1
        assert report.details[-1] == "... and 10 more errors"
