"""eventor_sync.eventor_client

Thin HTTP client for the Eventor REST API.  Returns raw XML text; parsing
lives in the parser modules.  One request in flight at a time, with a
fixed pacing delay before each call.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import Iterable

import requests

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://eventor.orientering.se/api"
DEFAULT_CLASSIFICATION_IDS = (1, 2, 3, 6)
# Eventor event status 3 = approved
APPROVED_EVENT_STATUS = 3


class EventorApiError(Exception):
    """Transport failure or non-2xx response from Eventor.

    ``status`` is None when no HTTP response was received.
    """

    def __init__(self, status: int | None, url: str, message: str = "") -> None:
        self.status = status
        self.url = url
        detail = message or (f"HTTP {status}" if status is not None else "transport error")
        super().__init__(f"{detail} ({url})")


@dataclass
class RequestPacer:
    """Fixed courtesy delay before every outbound request."""

    delay_seconds: float = 0.6

    def wait(self) -> None:
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)


class EventorClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        pacer: RequestPacer | None = None,
        timeout: int = 30,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.pacer = pacer or RequestPacer()
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"ApiKey": api_key, "Accept": "application/xml"})

    # -- URL builders (also used for the API call log) ----------------------

    def _url(self, path: str, params: dict | None = None) -> str:
        req = requests.Request("GET", f"{self.base_url}/{path.lstrip('/')}", params=params)
        return req.prepare().url

    def events_url(
        self,
        from_date: date,
        to_date: date,
        classification_ids: Iterable[int] = DEFAULT_CLASSIFICATION_IDS,
    ) -> str:
        return self._url(
            "events",
            {
                "fromDate": f"{from_date.isoformat()} 00:00:00",
                "toDate": f"{to_date.isoformat()} 23:59:59",
                "classificationIds": ",".join(str(i) for i in classification_ids),
                "EventStatusId": APPROVED_EVENT_STATUS,
            },
        )

    def persons_url(self, organisation_id: int) -> str:
        return self._url(f"persons/organisations/{organisation_id}")

    def results_url(self, organisation_id: int, event_id: int) -> str:
        return self._url(
            "results/organisation",
            {"organisationIds": organisation_id, "eventId": event_id},
        )

    # -- Requests -----------------------------------------------------------

    def fetch(self, url: str) -> str:
        self.pacer.wait()
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            log.warning("transport error fetching %s: %s", url, exc)
            raise EventorApiError(None, url, str(exc)) from exc
        if not 200 <= resp.status_code < 300:
            log.warning("Eventor returned %s for %s", resp.status_code, url)
            raise EventorApiError(resp.status_code, url)
        return resp.text

    def get_events(
        self,
        from_date: date,
        to_date: date,
        classification_ids: Iterable[int] = DEFAULT_CLASSIFICATION_IDS,
    ) -> str:
        return self.fetch(self.events_url(from_date, to_date, classification_ids))

    def get_persons(self, organisation_id: int) -> str:
        return self.fetch(self.persons_url(organisation_id))

    def get_results(self, organisation_id: int, event_id: int) -> str:
        return self.fetch(self.results_url(organisation_id, event_id))
