from __future__ import annotations

import unittest
from datetime import datetime, timezone
from typing import Any, List, Optional
from unittest.mock import MagicMock

import requests

from archiver import (
    CDX_API,
    RATE_LIMITED,
    SAVE_API,
    SUCCESS,
    ArchiveClient,
    ConfigurationError,
)
from profiles import ArchiverSettings, Credentials
from rules import SubstitutionRule


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def make_client(post: Optional[List[Any]] = None, get: Optional[List[Any]] = None, credentials: Optional[Credentials] = None):
    session = MagicMock()
    session.post.side_effect = post or []
    session.get.side_effect = get or []
    sleeps: List[float] = []
    client = ArchiveClient(
        credentials or Credentials("access", "secret"),
        session=session,
        sleep=sleeps.append,
        clock=lambda: datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
    )
    return client, session, sleeps


SETTINGS = ArchiverSettings(api_delay=0.5, max_retries=3)


class ArchiveClientTest(unittest.TestCase):
    def test_missing_keys_raise_configuration_error(self) -> None:
        client, session, _ = make_client(credentials=Credentials("", ""))
        with self.assertRaises(ConfigurationError):
            client.archive("https://example.com", SETTINGS)
        session.post.assert_not_called()

    def test_successful_capture_polls_until_done(self) -> None:
        client, session, sleeps = make_client(
            post=[FakeResponse(200, {"job_id": "job-1"})],
            get=[
                FakeResponse(200, {"status": "pending"}),
                FakeResponse(200, {"status": "success", "timestamp": "20260301115959", "original_url": "https://example.com/"}),
            ],
        )
        outcome = client.archive("https://example.com/", SETTINGS)
        self.assertEqual(outcome.status, SUCCESS)
        self.assertEqual(outcome.url, "https://web.archive.org/web/20260301115959/https://example.com/")
        self.assertEqual(sleeps, [0.5, 0.5, 0.5])

        args, kwargs = session.post.call_args
        self.assertEqual(args[0], SAVE_API)
        self.assertEqual(kwargs["headers"]["Authorization"], "LOW access:secret")
        self.assertEqual(kwargs["data"]["url"], "https://example.com/")
        self.assertEqual(kwargs["data"]["capture_screenshot"], "0")

    def test_success_without_timestamp_uses_clock(self) -> None:
        client, _, _ = make_client(
            post=[FakeResponse(200, {"job_id": "job-1"})],
            get=[FakeResponse(200, {"status": "success"})],
        )
        outcome = client.archive("https://example.com", SETTINGS)
        self.assertEqual(outcome.url, "https://web.archive.org/web/20260301120000/https://example.com")

    def test_substitution_rules_rewrite_target(self) -> None:
        settings = SETTINGS.with_overrides(substitution_rules=(SubstitutionRule("http://", "https://"),))
        client, session, _ = make_client(
            post=[FakeResponse(200, {"job_id": "job-1"})],
            get=[FakeResponse(200, {"status": "success", "timestamp": "20260301000000"})],
        )
        outcome = client.archive("http://example.com", settings)
        self.assertEqual(session.post.call_args.kwargs["data"]["url"], "https://example.com")
        self.assertEqual(outcome.url, "https://web.archive.org/web/20260301000000/https://example.com")

    def test_job_error_reports_status_ext(self) -> None:
        client, _, _ = make_client(
            post=[FakeResponse(200, {"job_id": "job-1"})],
            get=[FakeResponse(200, {"status": "error", "status_ext": "error:blocked-url"})],
        )
        outcome = client.archive("https://example.com", SETTINGS)
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error, "error:blocked-url")

    def test_poll_gives_up_after_max_retries(self) -> None:
        client, session, _ = make_client(
            post=[FakeResponse(200, {"job_id": "job-1"})],
            get=[
                FakeResponse(200, {"status": "pending"}),
                requests.ConnectionError("boom"),
                FakeResponse(502, None, "bad gateway"),
            ],
        )
        outcome = client.archive("https://example.com", SETTINGS)
        self.assertEqual(outcome.error, "Timeout")
        self.assertEqual(session.get.call_count, 3)

    def test_rate_limit_falls_back_to_latest_snapshot(self) -> None:
        client, session, _ = make_client(
            post=[FakeResponse(429, None, "Too Many Requests")],
            get=[FakeResponse(200, [["timestamp"], ["20250101000000"]])],
        )
        outcome = client.archive("https://example.com", SETTINGS)
        self.assertEqual(outcome.status, RATE_LIMITED)
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.url, "https://web.archive.org/web/20250101000000/https://example.com")
        self.assertEqual(session.get.call_args.args[0], CDX_API)

    def test_rate_limit_without_snapshot_uses_wildcard(self) -> None:
        client, _, _ = make_client(
            post=[FakeResponse(429)],
            get=[FakeResponse(200, [["timestamp"]])],
        )
        outcome = client.archive("https://example.com", SETTINGS)
        self.assertEqual(outcome.status, RATE_LIMITED)
        self.assertEqual(outcome.url, "https://web.archive.org/web/*/https://example.com")

    def test_duplicate_capture_message_uses_fallback(self) -> None:
        client, _, _ = make_client(
            post=[FakeResponse(200, {"message": "The same snapshot had been made 3 minutes ago."})],
            get=[requests.Timeout("slow")],
        )
        outcome = client.archive("https://example.com", SETTINGS)
        self.assertEqual(outcome.status, RATE_LIMITED)
        self.assertEqual(outcome.url, "https://web.archive.org/web/*/https://example.com")

    def test_initiation_failure_extracts_html_heading(self) -> None:
        client, _, _ = make_client(
            post=[FakeResponse(503, None, "<html><title>Service Unavailable</title><body>later</body></html>")],
        )
        outcome = client.archive("https://example.com", SETTINGS)
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error, "Initiation failed (503): Service Unavailable")

    def test_transport_error_is_a_failure(self) -> None:
        client, _, _ = make_client(post=[requests.ConnectionError("unreachable")])
        outcome = client.archive("https://example.com", SETTINGS)
        self.assertFalse(outcome.ok)
        self.assertTrue(outcome.error.startswith("Unexpected Error:"))

    def test_capture_params_follow_settings(self) -> None:
        client, _, _ = make_client()
        settings = ArchiverSettings(capture_outlinks=True, js_behavior_timeout=7, archive_freshness_days=2)
        params = client._capture_params("https://example.com", settings)
        self.assertEqual(params["capture_outlinks"], "1")
        self.assertEqual(params["js_behavior_timeout"], "7")
        self.assertEqual(params["if_not_archived_within"], "172800s")


if __name__ == "__main__":
    unittest.main()
