from typing import Any, Dict, Iterator
from opentrons_sequencer.common.custom_types import RunStatus, REMOTE_STATUS_MAP
from opentrons_sequencer.common.errors import MalformedResponseError

#---------- Response unwrapping ----------

def unwrap_data(payload: Any, what: str) -> Dict[str, Any]:
    """
    Return the `data` member of a robot response.

    Parameters:
        payload (Any): Decoded JSON body.
        what (str): Human-readable name of the request, for error messages.

    Raises:
        MalformedResponseError: If the body has no `data` object.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
        raise MalformedResponseError(f"{what}: response has no 'data' object", payload)
    return payload["data"]


def extract_id(payload: Any, what: str) -> str:
    """
    Return `data.id` of a robot response (protocolId or runId).

    Raises:
        MalformedResponseError: If the identifier is missing or empty.
    """
    data = unwrap_data(payload, what)
    ident = data.get("id")
    if not isinstance(ident, str) or not ident:
        raise MalformedResponseError(f"{what}: response lacks 'data.id'", payload)
    return ident


def normalise_status(remote: Any) -> RunStatus:
    """
    Map a robot-side run status onto a RunStatus.

    Raises:
        MalformedResponseError: If the status is missing or unknown.
    """
    try:
        return REMOTE_STATUS_MAP[remote]
    except (KeyError, TypeError):
        raise MalformedResponseError(f"Unknown run status {remote!r}", remote)

#---------- Retry policy ----------

def backoff_delays(retries: int, base: float, cap: float) -> Iterator[float]:
    """
    Yield the sleep before each retry: base, 2*base, 4*base, ... capped at `cap`.

    Exactly `retries` values are produced, so a caller making one initial
    attempt plus one attempt per delay never exceeds `retries + 1` requests.
    """
    for attempt in range(retries):
        yield min(base * (2 ** attempt), cap)
