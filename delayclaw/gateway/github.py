"""
Flight store backed by a GitHub repository (contents API).

Layout:
    <base_path>/<FLIGHT_NUMBER>/<YYYY-MM-DD>.json

The blob sha GitHub returns for a file is the record revision. GitHub
itself enforces the compare-and-swap: a PUT with a stale sha answers
409, and a PUT without a sha for an existing file answers 422. Both
map to GatewayConflict.
"""

import base64
import json
import logging
from typing import Optional
from urllib.parse import quote

import httpx

from delayclaw.core.exceptions import (
    ConfigurationError,
    GatewayConflict,
    GatewayError,
    NotFoundError,
)
from delayclaw.core.models import FlightRecord
from delayclaw.gateway.base import FlightMetadataGateway

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


class GitHubFlightGateway(FlightMetadataGateway):

    def __init__(
        self,
        repo:      str,
        token:     Optional[str] = None,
        branch:    str = "main",
        base_path: str = "flights",
        timeout:   float = 15.0,
        api_url:   str = GITHUB_API,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.repo      = repo
        self.branch    = branch
        self.base_path = base_path.strip("/")
        self._token    = token
        headers = {"Accept": "application/vnd.github.v3+json"}
        if token:
            headers["Authorization"] = f"token {token}"
        self._client = httpx.Client(
            base_url=  api_url,
            headers=   headers,
            timeout=   timeout,
            transport= transport,
        )

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.BaseTransport] = None) -> "GitHubFlightGateway":
        return cls(
            repo=      settings.store_repo,
            token=     settings.store_token,
            branch=    settings.store_branch,
            base_path= settings.store_base_path,
            timeout=   settings.http_timeout,
            transport= transport,
        )

    def path_for(self, flight_number: str, date: str) -> str:
        return f"{self.base_path}/{quote(flight_number, safe='')}/{date}.json"

    def _url(self, flight_number: str, date: str) -> str:
        return f"/repos/{self.repo}/contents/{self.path_for(flight_number, date)}"

    # ── Gateway contract ──────────────────────────────────────

    def get_flight_record(self, flight_number: str, date: str) -> FlightRecord:
        try:
            response = self._client.get(
                self._url(flight_number, date), params={"ref": self.branch}
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"Flight store unreachable: {exc}") from exc

        if response.status_code == 404:
            raise NotFoundError(
                "Flight record not found",
                {"flight_number": flight_number, "date": date},
            )
        if response.status_code != 200:
            raise GatewayError(
                f"Flight store read failed with HTTP {response.status_code}",
                {"path": self.path_for(flight_number, date)},
            )

        body = response.json()
        try:
            raw = base64.b64decode(body["content"])
            document = json.loads(raw.decode("utf-8"))
        except (KeyError, ValueError) as exc:
            raise GatewayError(f"Flight record is not valid JSON: {exc}") from exc
        return FlightRecord.from_dict(document, revision=body.get("sha"))

    def upsert_flight_record(
        self,
        record:            FlightRecord,
        expected_revision: Optional[str],
    ) -> str:
        if not self._token:
            raise ConfigurationError("GITHUB_TOKEN is required to write flight records")

        content = json.dumps(record.to_dict(), indent=2).encode("utf-8")
        payload = {
            "message": f"Update flight {record.flight_number} {record.date}",
            "content": base64.b64encode(content).decode("ascii"),
            "branch":  self.branch,
        }
        if expected_revision is not None:
            payload["sha"] = expected_revision

        try:
            response = self._client.put(
                self._url(record.flight_number, record.date), json=payload
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"Flight store unreachable: {exc}") from exc

        if response.status_code in (409, 422):
            raise GatewayConflict(
                "Flight record changed since it was read",
                {"status": response.status_code, "expected": expected_revision},
            )
        if response.status_code not in (200, 201):
            raise GatewayError(
                f"Flight store write failed with HTTP {response.status_code}",
                {"body": response.text[:200]},
            )

        revision = response.json().get("content", {}).get("sha")
        if not revision:
            raise GatewayError("Flight store write returned no revision")
        logger.debug("Wrote %s at revision %s", self.path_for(record.flight_number, record.date), revision)
        return revision

    def close(self) -> None:
        self._client.close()
