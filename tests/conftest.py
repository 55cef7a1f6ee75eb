"""Shared fixtures: an in-memory robot standing in for RobotAPI."""

from __future__ import annotations

from typing import Dict, List, Optional

import pytest

from opentrons_sequencer.common.config import Settings
from opentrons_sequencer.common.errors import NetworkError, UploadError


class FakeRobotAPI:
    """
    Records every call and answers with scripted run statuses.

    `statuses[n]` is the list of statuses successive GET /runs polls of the
    n-th created run return; the last one repeats forever.
    """

    def __init__(self, statuses: Optional[List[List[str]]] = None, errors=None):
        self.statuses = statuses or []
        self.errors = errors
        self.calls: List[tuple] = []
        self.uploads: List[tuple] = []
        self.fail_upload_at: Optional[int] = None
        self.reachable = True
        self.closed = False
        self._polls: Dict[str, int] = {}
        self._runs: List[str] = []

    def health(self):
        self.calls.append(("health",))
        if not self.reachable:
            raise NetworkError("GET /health failed: connection refused")
        return {"name": "fake", "api_version": "7.0.0"}

    def upload_protocol(self, filename: str, content: str) -> str:
        index = len(self.uploads)
        self.calls.append(("upload", filename))
        if self.fail_upload_at == index:
            raise UploadError("rejected", status_code=422, body="bad protocol")
        self.uploads.append((filename, content))
        return f"protocol-{index}"

    def create_run(self, protocol_id: str, runtime_params=None) -> str:
        run_id = f"run-{len(self._runs)}"
        self._runs.append(run_id)
        self.calls.append(("create_run", protocol_id, dict(runtime_params or {})))
        return run_id

    def play_run(self, run_id: str) -> None:
        self.calls.append(("play", run_id))

    def resume_run(self, run_id: str) -> None:
        self.calls.append(("resume", run_id))

    def stop_run(self, run_id: str) -> None:
        self.calls.append(("stop", run_id))

    def delete_protocol(self, protocol_id: str) -> None:
        self.calls.append(("delete", protocol_id))

    def get_run(self, run_id: str):
        index = self._runs.index(run_id)
        script = self.statuses[index] if index < len(self.statuses) else ["succeeded"]
        poll = self._polls.get(run_id, 0)
        self._polls[run_id] = poll + 1
        status = script[min(poll, len(script) - 1)]
        self.calls.append(("get_run", run_id, status))
        data = {"id": run_id, "status": status}
        if status == "failed":
            data["errors"] = self.errors or [{"errorType": "PipetteError", "detail": "tip collision"}]
        return data

    def polls(self, run_id: str) -> int:
        return self._polls.get(run_id, 0)

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def submitted(self) -> List[str]:
        return [filename for filename, _ in self.uploads]


@pytest.fixture
def fast_settings():
    return Settings(poll_interval=0.01, run_timeout=2.0, retries=0)


HEAT_TEMPLATE = """\
from opentrons import protocol_api

metadata = {"apiLevel": "2.13"}

def run(protocol: protocol_api.ProtocolContext):
    module = protocol.load_module("temperature module", 1)
    module.set_temperature(celsius=$temperature)
    protocol.delay(seconds=$delay_seconds)
"""


@pytest.fixture
def heat_template():
    return HEAT_TEMPLATE
