"""
http_handler.py

Pure blocking HTTP transport for the Opentrons robot server.
It is designed to be called from an asyncio event loop
via run_in_executor().
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Mapping, Optional

import requests

from opentrons_sequencer.common.config import Settings
from opentrons_sequencer.common.custom_types import ActionType, ParamValue, RunData
from opentrons_sequencer.common.errors import (
    MalformedResponseError,
    NetworkError,
    RequestRejectedError,
    StartError,
    UploadError,
)
from opentrons_sequencer.common.helpers import backoff_delays, extract_id, unwrap_data

logger = logging.getLogger(__name__)

# Methods the robot can safely receive twice
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


class HTTPClient:
    """
    Low-level HTTP client for one robot.

    Responsibilities:
    - send requests with the API version header
    - retry transient network errors with bounded exponential backoff
    - decode JSON bodies

    This class is BLOCKING. It owns a requests.Session, so it must be closed.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_version: str = "2",
        timeout: float = 30.0,
        retries: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.session = session or requests.Session()
        self.session.headers.update({"Opentrons-Version": api_version})

    # ------------------------------------------------------------------
    # Core helpers
    # ------------------------------------------------------------------

    def _send(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method} {url} failed: {e}") from e

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        """
        Send a request, retrying connection errors and timeouts.

        Non-2xx responses are returned as-is: what a rejection means is
        up to the caller. Only NetworkError is retried. A POST is not
        retried after a read timeout, since the robot may already have
        acted on it (created a run, played it) and only the reply was lost.

        Raises
        ------
        NetworkError
            If every attempt failed to reach the robot.
        """
        delays = backoff_delays(self.retries, self.backoff_base, self.backoff_max)
        while True:
            try:
                return self._send(method, path, **kwargs)
            except NetworkError as e:
                delay = next(delays, None)
                if delay is None or not _is_transient(e, method):
                    raise
                logger.warning("%s; retrying in %.2fs", e, delay)
                time.sleep(delay)

    @staticmethod
    def decode(response: requests.Response, what: str) -> Any:
        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{what}: response is not JSON: {response.text[:200]!r}"
            ) from e
        logger.debug("%s -> %s %s", what, response.status_code, payload)
        return payload

    def close(self) -> None:
        self.session.close()


def _is_transient(error: NetworkError, method: str) -> bool:
    # Malformed URL, too many redirects, ... : retrying will not help
    cause = error.__cause__
    if method.upper() in IDEMPOTENT_METHODS:
        return isinstance(cause, (requests.exceptions.ConnectionError, requests.exceptions.Timeout))
    # ConnectTimeout is a ConnectionError; ReadTimeout means the request was sent
    return isinstance(cause, requests.exceptions.ConnectionError)


class RobotAPI:
    """
    Thin Opentrons-specific wrapper around HTTPClient.

    Responsibilities:
    - register protocols
    - create runs and issue run actions (play, pause, stop)
    - report run status

    Each method maps transport failures onto the error of the operation it
    performs (UploadError for protocols, StartError for runs), so callers
    know which step of the sequence went wrong.

    The object is a context manager; the caller owns its lifecycle.
    """

    def __init__(self, http: HTTPClient):
        self.http = http

    @classmethod
    def from_settings(cls, settings: Settings, robot_url: Optional[str] = None) -> RobotAPI:
        return cls(HTTPClient(
            robot_url or settings.robot_url,
            api_version=settings.api_version,
            timeout=settings.request_timeout,
            retries=settings.retries,
            backoff_base=settings.backoff_base,
            backoff_max=settings.backoff_max,
        ))

    def __enter__(self) -> RobotAPI:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self.http.close()

    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        """Check the robot server answers; returns its /health payload."""
        response = self.http.request("GET", "/health")
        if not response.ok:
            raise RequestRejectedError(
                f"Robot health check returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return self.http.decode(response, "GET /health")

    # ------------------------------------------------------------------

    def upload_protocol(self, filename: str, content: str) -> str:
        """
        Register protocol source with the robot.

        Returns
        -------
        str
            The protocolId assigned by the robot.
        """
        files = [("files", (filename, content.encode("utf-8"), "text/x-python"))]
        try:
            response = self.http.request("POST", "/protocols", files=files)
        except NetworkError as e:
            raise UploadError(f"Uploading {filename} failed: {e}") from e

        if not response.ok:
            raise UploadError(
                f"Uploading {filename} rejected with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        protocol_id = extract_id(self.http.decode(response, "POST /protocols"), "POST /protocols")
        logger.info("Uploaded %s as protocol %s", filename, protocol_id)
        return protocol_id

    def delete_protocol(self, protocol_id: str) -> None:
        response = self.http.request("DELETE", f"/protocols/{protocol_id}")
        if not response.ok and response.status_code != 404:
            raise UploadError(
                f"Deleting protocol {protocol_id} rejected with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

    # ------------------------------------------------------------------

    def create_run(
        self,
        protocol_id: str,
        runtime_params: Optional[Mapping[str, ParamValue]] = None,
    ) -> str:
        """
        Create a run bound to a registered protocol.

        Returns
        -------
        str
            The runId assigned by the robot.
        """
        data: Dict[str, Any] = {"protocolId": protocol_id}
        if runtime_params:
            data["runTimeParameterValues"] = dict(runtime_params)

        try:
            response = self.http.request("POST", "/runs", json={"data": data})
        except NetworkError as e:
            raise StartError(f"Creating run for protocol {protocol_id} failed: {e}") from e

        if not response.ok:
            raise StartError(
                f"Creating run for protocol {protocol_id} rejected with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return extract_id(self.http.decode(response, "POST /runs"), "POST /runs")

    def run_action(self, run_id: str, action: ActionType) -> Dict[str, Any]:
        """Issue a play / pause / stop action against a run."""
        path = f"/runs/{run_id}/actions"
        try:
            response = self.http.request("POST", path, json={"data": {"actionType": action}})
        except NetworkError as e:
            raise StartError(f"Action '{action}' on run {run_id} failed: {e}") from e

        if not response.ok:
            raise StartError(
                f"Action '{action}' on run {run_id} rejected with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return self.http.decode(response, f"POST {path}")

    def play_run(self, run_id: str) -> None:
        self.run_action(run_id, "play")

    def resume_run(self, run_id: str) -> None:
        """Resume a paused run; the robot API resumes with a second play action."""
        self.run_action(run_id, "play")

    def stop_run(self, run_id: str) -> None:
        self.run_action(run_id, "stop")

    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> RunData:
        """
        Fetch the current state of a run.

        Raises
        ------
        NetworkError
            If the robot is unreachable.
        RequestRejectedError
            If the robot rejects the query, e.g. 404 for a deleted run.
        MalformedResponseError
            If the body has no `data` object.
        """
        path = f"/runs/{run_id}"
        response = self.http.request("GET", path)
        if not response.ok:
            raise RequestRejectedError(
                f"GET {path} rejected with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return unwrap_data(self.http.decode(response, f"GET {path}"), f"GET {path}")  # type: ignore[return-value]
