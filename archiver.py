from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from freshness import format_timestamp
from profiles import ArchiverSettings, Credentials
from rules import apply_rules


SAVE_API = "https://web.archive.org/save"
STATUS_API = "https://web.archive.org/save/status/{job_id}"
CDX_API = "https://web.archive.org/cdx/search/cdx"
SNAPSHOT_URL = "https://web.archive.org/web/{timestamp}/{url}"
WILDCARD_URL = "https://web.archive.org/web/*/{url}"
DUPLICATE_CAPTURE_MESSAGE = "The same snapshot had been made"

SUCCESS = "success"
RATE_LIMITED = "rate_limited"
FAILED = "failed"

logger = logging.getLogger(__name__)


class ArchiverError(RuntimeError):
    pass


class ConfigurationError(ArchiverError):
    pass


@dataclass(frozen=True)
class ArchivalOutcome:
    status: str
    url: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (SUCCESS, RATE_LIMITED)

    @classmethod
    def success(cls, url: str) -> "ArchivalOutcome":
        return cls(SUCCESS, url=url)

    @classmethod
    def rate_limited(cls, url: str) -> "ArchivalOutcome":
        return cls(RATE_LIMITED, url=url)

    @classmethod
    def failed(cls, error: str) -> "ArchivalOutcome":
        return cls(FAILED, error=error)


class ArchiveClient:
    def __init__(
        self,
        credentials: Credentials,
        timeout: int = 45,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.credentials = credentials
        self.timeout = timeout
        self.session = session if session is not None else self._build_session()
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        retry = Retry(
            total=3,
            connect=3,
            read=3,
            backoff_factor=0.8,
            status_forcelist=(500, 502, 503, 504),
            allowed_methods=("GET",),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    @property
    def has_credentials(self) -> bool:
        return self.credentials.complete

    def ensure_configured(self) -> None:
        if not self.has_credentials:
            raise ConfigurationError("Archive.org SPN API keys are not configured.")

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Authorization": f"LOW {self.credentials.access_key}:{self.credentials.secret_key}",
        }

    def _pace(self, settings: ArchiverSettings) -> None:
        if settings.api_delay > 0:
            self._sleep(settings.api_delay)

    def _capture_params(self, url: str, settings: ArchiverSettings) -> Dict[str, str]:
        params = {
            "url": url,
            "capture_outlinks": "1" if settings.capture_outlinks else "0",
            "capture_screenshot": "1" if settings.capture_screenshot else "0",
            "force_get": "1" if settings.force_get else "0",
            "capture_all": "1" if settings.capture_all else "0",
            "skip_first_archive": "1",
        }
        if settings.js_behavior_timeout > 0:
            params["js_behavior_timeout"] = str(settings.js_behavior_timeout)
        if settings.archive_freshness_days > 0:
            params["if_not_archived_within"] = f"{int(settings.freshness_seconds)}s"
        return params

    def archive(self, url: str, settings: ArchiverSettings) -> ArchivalOutcome:
        self.ensure_configured()
        target = apply_rules(url, settings.substitution_rules)
        self._pace(settings)

        try:
            headers = self._auth_headers()
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            response = self.session.post(
                SAVE_API,
                data=self._capture_params(target, settings),
                headers=headers,
                timeout=(10, self.timeout),
            )
        except requests.RequestException as exc:
            logger.warning("Capture request for %s failed: %s", target, exc)
            return ArchivalOutcome.failed(f"Unexpected Error: {exc}")

        status = int(response.status_code)
        if status == 429:
            logger.info("Rate limited while capturing %s; falling back to latest snapshot", target)
            return self._fallback_outcome(target)

        payload = self._json_or_none(response)
        job_id = payload.get("job_id") if isinstance(payload, dict) else None
        if status != 200 or not job_id:
            message = str(payload.get("message") or "") if isinstance(payload, dict) else ""
            if status == 200 and DUPLICATE_CAPTURE_MESSAGE in message:
                return self._fallback_outcome(target)
            detail = self._describe_failure(response, payload)
            error = f"Initiation failed ({status})"
            if detail:
                error = f"{error}: {detail}"
            logger.warning("Capture of %s not started: %s", target, error)
            return ArchivalOutcome.failed(error)

        return self._poll(str(job_id), target, settings)

    def _poll(self, job_id: str, target: str, settings: ArchiverSettings) -> ArchivalOutcome:
        retries = 0
        while retries < settings.max_retries:
            self._pace(settings)
            try:
                response = self.session.get(
                    STATUS_API.format(job_id=job_id),
                    headers=self._auth_headers(),
                    timeout=(10, self.timeout),
                )
            except requests.RequestException as exc:
                logger.debug("Status check for job %s failed: %s", job_id, exc)
                retries += 1
                continue

            payload = self._json_or_none(response)
            if int(response.status_code) != 200 or not isinstance(payload, dict):
                retries += 1
                continue

            state = payload.get("status")
            if state == "success":
                timestamp = payload.get("timestamp") or format_timestamp(self._clock())
                original = payload.get("original_url") or target
                return ArchivalOutcome.success(SNAPSHOT_URL.format(timestamp=timestamp, url=original))
            if state == "error":
                return ArchivalOutcome.failed(str(payload.get("status_ext") or "Unknown error"))
            retries += 1

        logger.warning("Capture of %s timed out after %s status checks (job %s)", target, settings.max_retries, job_id)
        return ArchivalOutcome.failed("Timeout")

    def _fallback_outcome(self, target: str) -> ArchivalOutcome:
        latest = self.latest_snapshot_url(target)
        if latest:
            return ArchivalOutcome.rate_limited(latest)
        return ArchivalOutcome.rate_limited(WILDCARD_URL.format(url=target))

    def latest_snapshot_url(self, url: str) -> Optional[str]:
        params = {
            "url": url,
            "output": "json",
            "fl": "timestamp",
            "filter": "statuscode:200",
            "limit": "1",
            "sort": "reverse",
        }
        try:
            response = self.session.get(CDX_API, params=params, timeout=(8, min(self.timeout, 25)))
            if int(response.status_code) != 200:
                return None
            rows = response.json()
            timestamp = rows[1][0]
        except (requests.RequestException, ValueError, TypeError, IndexError, KeyError):
            return None
        if not isinstance(timestamp, str) or not timestamp.isdigit():
            return None
        return SNAPSHOT_URL.format(timestamp=timestamp, url=url)

    def _json_or_none(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    def _describe_failure(self, response: requests.Response, payload: Any) -> str:
        if isinstance(payload, dict):
            for key in ("message", "status_ext", "error"):
                if payload.get(key):
                    return str(payload[key])
        text = getattr(response, "text", "") or ""
        if "<" in text:
            soup = BeautifulSoup(text, "html.parser")
            heading = soup.find(["h1", "h2", "title"])
            text = heading.get_text(" ") if heading else soup.get_text(" ")
        return " ".join(text.split())[:200]
