from typing import TypedDict, Dict, List, Union, Literal, Optional

#------------ JSON Type Definitions ------------

# Everything that crosses the robot HTTP boundary (run parameters,
# response payloads) must be something serialisable to JSON.

JSONScalar = Union[str, int, float, bool, None]
JSONType = Union[JSONScalar, List["JSONType"], Dict[str, "JSONType"]]

# Values substituted into protocol templates and sent as run-time parameters
ParamValue = Union[str, int, float, bool]

#------------ Run status ------------

RunStatus = Literal[
            "queued",
            "running",
            "paused",       # paused for intervention, needs a resume signal
            "succeeded",
            "failed",
            "stopped"]

TERMINAL_STATUSES: frozenset = frozenset({"succeeded", "failed", "stopped"})

# Robot-side status strings -> the statuses the orchestrator reasons about
REMOTE_STATUS_MAP: Dict[str, RunStatus] = {
    "idle": "queued",
    "queued": "queued",
    "running": "running",
    "finishing": "running",
    "stop-requested": "running",
    "paused": "paused",
    "blocked-by-open-door": "paused",
    "awaiting-recovery": "paused",
    "awaiting-recovery-paused": "paused",
    "awaiting-recovery-blocked-by-open-door": "paused",
    "succeeded": "succeeded",
    "failed": "failed",
    "stopped": "stopped",
}

ActionType = Literal["play", "pause", "stop"]

#------------ Robot API payloads ------------

class RunError(TypedDict, total=False):
    """Single entry of the `errors` list attached to a run."""
    id: str
    errorType: str
    errorCode: str
    detail: str
    createdAt: str

class RunData(TypedDict, total=False):
    """The `data` member of a GET /runs/{id} response."""
    id: str
    protocolId: str
    status: str
    current: bool
    errors: List[RunError]
    createdAt: str
    startedAt: Optional[str]
    completedAt: Optional[str]

#------------ Config formatting ------------

class RobotInfo(TypedDict):
    """Entry of the robot registry file read by the job service."""
    url: str

# ---------- Full robot registry for the job service ----------
RobotsConfig = Dict[str, RobotInfo]   # e.g. {"TrixieMixie": {"url": "http://10.0.0.5:31950"}}
