"""
Tests for the submission client and the sync workflow.

The HTTP layer is replaced with httpx.MockTransport; the end-to-end tests
forward requests to the real FastAPI application.
"""

import json
import os
import tempfile
from datetime import datetime

import httpx
import pytest
from fastapi.testclient import TestClient

from usage_sync.client.api import CHECKSUM_PATH, SUBMIT_PATH, UsageSyncClient
from usage_sync.client.credentials import Credentials
from usage_sync.client.sync import SyncStatus, plan_submission, sync_usage
from usage_sync.core.aggregator import aggregate_events
from usage_sync.core.diff import DiffMode
from usage_sync.core.hasher import compute_fingerprints
from usage_sync.errors import AuthenticationError, NetworkError, SubmissionError, ValidationError
from usage_sync.server.app import create_app
from usage_sync.server.service import ReconciliationService
from usage_sync.storage.models import UsageEvent
from usage_sync.storage.repository import SubmissionRepository, initialize_schema

NOW = datetime(2024, 6, 1, 12, 0, 0)
BASE_URL = "http://usage.test"


def _aggregates(extra=()):
    events = [
        UsageEvent(datetime(2024, 5, 30, 10), "opencode", "sonnet", input=100, output=20, cost=0.01),
        UsageEvent(datetime(2024, 5, 31, 10), "claude", "opus", input=300, output=60, cost=0.2),
    ]
    return aggregate_events(events + list(extra))


def _success_body():
    return {"success": True, "submissionId": "sub-1", "username": "alice", "metrics": {}}


class RecordingHandler:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, checksum=None, submit=None):
        self.checksum = checksum or (lambda request: httpx.Response(200, json={}))
        self.submit = submit or (lambda request: httpx.Response(200, json=_success_body()))
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if request.url.path == CHECKSUM_PATH:
            return self.checksum(request)
        return self.submit(request)

    def paths(self):
        return [(r.method, r.url.path) for r in self.requests]


def _client(handler):
    return UsageSyncClient(BASE_URL, Credentials(token="us_test"), transport=httpx.MockTransport(handler))


class TestFetchFingerprints:
    """Test GET of the server's fingerprint table."""

    def test_returns_table(self):
        table = {"2024-05-30": {"opencode": "0badf00d"}}
        handler = RecordingHandler(checksum=lambda r: httpx.Response(200, json=table))

        assert _client(handler).fetch_fingerprints() == table
        assert handler.requests[0].headers["Authorization"] == "Bearer us_test"

    def test_server_error_means_unknown(self):
        handler = RecordingHandler(checksum=lambda r: httpx.Response(500, json={"error": "boom"}))
        assert _client(handler).fetch_fingerprints() is None

    def test_unauthorized_means_unknown(self):
        handler = RecordingHandler(checksum=lambda r: httpx.Response(401, json={"error": "Invalid API token"}))
        assert _client(handler).fetch_fingerprints() is None

    def test_connection_failure_means_unknown(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert _client(RecordingHandler(checksum=refuse)).fetch_fingerprints() is None

    def test_timeout_means_unknown(self):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        assert _client(RecordingHandler(checksum=slow)).fetch_fingerprints() is None

    def test_unexpected_shape_means_unknown(self):
        for body in ([1, 2], {"2024-05-30": ["x"]}, {"2024-05-30": {"opencode": 7}}):
            handler = RecordingHandler(checksum=lambda r, body=body: httpx.Response(200, json=body))
            assert _client(handler).fetch_fingerprints() is None

    def test_invalid_json_means_unknown(self):
        handler = RecordingHandler(checksum=lambda r: httpx.Response(200, content=b"<html>"))
        assert _client(handler).fetch_fingerprints() is None


class TestSubmit:
    """Test POST of a payload and error classification."""

    def test_success(self):
        handler = RecordingHandler()
        response = _client(handler).submit({"contributions": []})

        assert response["submissionId"] == "sub-1"
        assert handler.paths() == [("POST", SUBMIT_PATH)]
        assert json.loads(handler.requests[0].content) == {"contributions": []}

    def test_unauthorized(self):
        handler = RecordingHandler(submit=lambda r: httpx.Response(401, json={"error": "API token has expired"}))
        with pytest.raises(AuthenticationError, match="expired"):
            _client(handler).submit({})

    def test_validation_failure_carries_details(self):
        body = {"error": "Validation failed", "details": ["a", "b"]}
        handler = RecordingHandler(submit=lambda r: httpx.Response(400, json=body))

        with pytest.raises(ValidationError) as exc_info:
            _client(handler).submit({})

        assert exc_info.value.message == "Validation failed"
        assert exc_info.value.details == ["a", "b"]

    def test_other_failure(self):
        handler = RecordingHandler(submit=lambda r: httpx.Response(503, content=b"unavailable"))
        with pytest.raises(SubmissionError) as exc_info:
            _client(handler).submit({})
        assert exc_info.value.status_code == 503

    def test_network_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NetworkError):
            _client(RecordingHandler(submit=refuse)).submit({})


class TestSyncUsage:
    """Test the incremental sync workflow against a mocked server."""

    def test_nothing_to_submit(self):
        handler = RecordingHandler()
        outcome = sync_usage([], _client(handler))

        assert outcome.status == SyncStatus.NO_DATA
        assert handler.requests == []

    def test_up_to_date_sends_no_submission(self):
        local = _aggregates()
        handler = RecordingHandler(checksum=lambda r: httpx.Response(200, json=compute_fingerprints(local)))

        outcome = sync_usage(local, _client(handler))

        assert outcome.status == SyncStatus.UP_TO_DATE
        assert handler.paths() == [("GET", CHECKSUM_PATH)]

    def test_changed_day_only(self):
        before = _aggregates()
        after = _aggregates([UsageEvent(datetime(2024, 5, 31, 11), "claude", "opus", input=1, cost=0.001)])
        handler = RecordingHandler(checksum=lambda r: httpx.Response(200, json=compute_fingerprints(before)))

        outcome = sync_usage(after, _client(handler))

        assert outcome.status == SyncStatus.SUBMITTED
        assert outcome.diff.mode == DiffMode.DIFF
        sent = json.loads(handler.requests[1].content)
        assert [c["date"] for c in sent["contributions"]] == ["2024-05-31"]
        assert outcome.response["submissionId"] == "sub-1"

    def test_unreachable_server_falls_back_to_full_upload(self):
        handler = RecordingHandler(checksum=lambda r: httpx.Response(502))

        outcome = sync_usage(_aggregates(), _client(handler))

        assert outcome.status == SyncStatus.SUBMITTED
        assert outcome.diff.mode == DiffMode.FULL
        sent = json.loads(handler.requests[1].content)
        assert len(sent["contributions"]) == 2

    def test_full_skips_fingerprint_fetch(self):
        handler = RecordingHandler()

        diff = plan_submission(_aggregates(), _client(handler), full=True)

        assert diff.mode == DiffMode.FULL
        assert handler.requests == []

    def test_dry_run_does_not_submit(self):
        handler = RecordingHandler()

        outcome = sync_usage(_aggregates(), _client(handler), dry_run=True)

        assert outcome.status == SyncStatus.DRY_RUN
        assert outcome.payload["summary"]["totalTokens"] == 120 + 360
        assert handler.paths() == [("GET", CHECKSUM_PATH)]

    def test_submit_failure_propagates(self):
        handler = RecordingHandler(submit=lambda r: httpx.Response(400, json={"error": "Validation failed"}))
        with pytest.raises(ValidationError):
            sync_usage(_aggregates(), _client(handler))

    def test_warnings_are_exposed(self):
        body = {**_success_body(), "warnings": ["high cost"]}
        handler = RecordingHandler(submit=lambda r: httpx.Response(200, json=body))

        outcome = sync_usage(_aggregates(), _client(handler))

        assert outcome.warnings == ["high cost"]


class TestEndToEnd:
    """Client against the real application, forwarded in-process."""

    @pytest.fixture
    def server(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "e2e.db")
            initialize_schema(db_path)
            service = ReconciliationService(SubmissionRepository(db_path), clock=lambda: NOW)
            yield service, TestClient(create_app(service))

    def _forwarding_client(self, test_client, token):
        def forward(request):
            response = test_client.request(
                request.method,
                request.url.path,
                content=request.content,
                headers=dict(request.headers),
            )
            return httpx.Response(response.status_code, content=response.content, headers=dict(response.headers))

        return UsageSyncClient(BASE_URL, Credentials(token=token), transport=httpx.MockTransport(forward))

    def test_first_then_repeated_sync(self, server):
        service, test_client = server
        token = service.repository.create_api_token("user-1", "alice", now=NOW).token
        client = self._forwarding_client(test_client, token)

        first = sync_usage(_aggregates(), client)
        second = sync_usage(_aggregates(), client)

        assert first.status == SyncStatus.SUBMITTED
        assert first.diff.mode == DiffMode.FULL
        assert first.response["metrics"]["totalTokens"] == 120 + 360
        assert second.status == SyncStatus.UP_TO_DATE

    def test_incremental_sync_keeps_older_days(self, server):
        service, test_client = server
        token = service.repository.create_api_token("user-1", "alice", now=NOW).token
        client = self._forwarding_client(test_client, token)
        sync_usage(_aggregates(), client)

        after = _aggregates([UsageEvent(datetime(2024, 5, 31, 11), "claude", "opus", input=1, cost=0.001)])
        outcome = sync_usage(after, client)

        assert outcome.diff.mode == DiffMode.DIFF
        assert outcome.response["metrics"]["dateRange"] == {"start": "2024-05-30", "end": "2024-05-31"}
        assert service.get_fingerprints(token) == compute_fingerprints(after)

    def test_rejected_token(self, server):
        _, test_client = server
        client = self._forwarding_client(test_client, "us_unknown")

        with pytest.raises(AuthenticationError):
            sync_usage(_aggregates(), client)
