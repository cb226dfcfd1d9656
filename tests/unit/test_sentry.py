"""Tests for Sentry initialization."""

from unittest.mock import patch

from fastapi import HTTPException

from jobscheduler.config import Settings
from jobscheduler.core.sentry import _before_send, init_sentry


class TestBeforeSend:
    def test_drops_client_errors(self):
        exc = HTTPException(status_code=404, detail="Job not found: x")
        assert _before_send({}, {"exc_info": (HTTPException, exc, None)}) is None

    def test_keeps_server_errors(self):
        event = {"message": "boom"}
        exc = RuntimeError("boom")
        assert _before_send(event, {"exc_info": (RuntimeError, exc, None)}) is event

    def test_drops_4xx_response_context(self):
        event = {"contexts": {"response": {"status_code": 409}}}
        assert _before_send(event, {}) is None


class TestInitSentry:
    def test_skipped_without_dsn(self):
        with patch("jobscheduler.core.sentry.sentry_sdk.init") as mock_init:
            assert init_sentry(Settings(sentry_dsn=None)) is False
        mock_init.assert_not_called()

    def test_initializes_with_dsn(self):
        settings = Settings(
            sentry_dsn="https://key@o0.ingest.sentry.io/0",
            sentry_environment="staging",
            sentry_traces_sample_rate=0.5,
        )
        with patch("jobscheduler.core.sentry.sentry_sdk.init") as mock_init, patch(
            "jobscheduler.core.sentry.sentry_sdk.set_tag"
        ) as mock_tag:
            assert init_sentry(settings) is True

        kwargs = mock_init.call_args.kwargs
        assert kwargs["environment"] == "staging"
        assert kwargs["traces_sample_rate"] == 0.5
        assert kwargs["before_send"] is _before_send
        mock_tag.assert_called_once_with("service", "jobscheduler")
