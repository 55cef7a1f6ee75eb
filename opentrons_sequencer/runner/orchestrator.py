from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence, Union

from opentrons_sequencer.common.custom_types import ParamValue, RunStatus, TERMINAL_STATUSES
from opentrons_sequencer.common.errors import (
    RobotError,
    RunFailedError,
    RunInProgressError,
    RunStoppedError,
    RunTimeoutError,
    SequenceAborted,
    SequenceDefinitionError,
    TemplateError,
)
from opentrons_sequencer.common.helpers import normalise_status
from opentrons_sequencer.protocol.sequence import WorkItem
from opentrons_sequencer.runner.http_handler import RobotAPI

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProtocolHandle:
    """A protocol registered on the robot."""
    protocol_id: str
    filename: str


@dataclass(frozen=True)
class RunHandle:
    """One executing instance of a protocol. Terminal once its run ends."""
    run_id: str
    protocol_id: str


@dataclass(frozen=True)
class RunOutcome:
    """What happened to one work item of a sequence."""
    index: int
    item: WorkItem
    protocol: ProtocolHandle
    run: RunHandle
    status: RunStatus


FeedbackHook = Callable[
    [Optional[RunOutcome], WorkItem],
    Union[Optional[WorkItem], Awaitable[Optional[WorkItem]]],
]
PauseHandler = Callable[[RunHandle], Union[bool, Awaitable[bool]]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class RunOrchestrator:
    """
    Executes work items sequentially on a single Opentrons robot.

    For every item: upload the rendered protocol, create a run, play it,
    poll its status until it ends. Only one run is ever active: the next
    item is not uploaded before the previous run reached a terminal status.

    Responsibilities
    ----------------
    - render and register protocols
    - start runs and poll them to completion
    - call the feedback hook between items
    - stop at the first item that does not succeed
    - handle abort requests

    The orchestrator does not own the RobotAPI: the caller opens and
    closes it. Nothing is rolled back on failure, since physical lab
    actions cannot be undone.
    """

    def __init__(
        self,
        api: RobotAPI,
        *,
        poll_interval: float = 1.0,
        run_timeout: float = 3600.0,
        on_pause: Optional[PauseHandler] = None,
        stop_on_abort: bool = False,
        delete_protocols: bool = False,
    ):
        """
        Parameters
        ----------
        api :
            Blocking robot client. All interactions with the robot are
            delegated to this object.
        poll_interval :
            Default interval (in seconds) between run status polls.
        run_timeout :
            Default time (in seconds) a single run may take.
        on_pause :
            Called once each time a run enters the paused state. When it
            returns True the run is resumed; otherwise polling continues
            until someone resumes it elsewhere (e.g. from the App).
        stop_on_abort :
            Send a stop action to the in-flight run when aborted.
            By default the run is left going on the robot.
        delete_protocols :
            Remove each protocol from the robot after its run succeeded.
        """
        self.api = api
        self.poll_interval = poll_interval
        self.run_timeout = run_timeout
        self.on_pause = on_pause
        self.stop_on_abort = stop_on_abort
        self.delete_protocols = delete_protocols

        self._abort_event = asyncio.Event()
        self._active_run: Optional[RunHandle] = None

    # --------------------------------------------------------
    # Public control API
    # --------------------------------------------------------

    def abort(self) -> None:
        """
        Request abortion of the running sequence.

        This method is non-blocking. The request is checked
        - before each work item
        - during status polling
        """
        self._abort_event.set()

    @property
    def active_run(self) -> Optional[RunHandle]:
        return self._active_run

    # --------------------------------------------------------
    # Async <-> blocking bridge
    # --------------------------------------------------------

    async def _run_blocking(self, fn, *args):
        """
        Run a blocking robot call in the default executor.
        All robot calls go through here, so the event loop is never blocked.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    # --------------------------------------------------------
    # Single steps
    # --------------------------------------------------------

    async def submit(self, item: WorkItem) -> ProtocolHandle:
        """
        Render a work item and register it as a protocol.

        Raises
        ------
        TemplateError
            If the item's parameters do not fit its template.
        UploadError
            If the robot is unreachable or rejects the protocol.
        MalformedResponseError
            If the robot's answer carries no protocol id.
        """
        content = item.render()
        protocol_id = await self._run_blocking(self.api.upload_protocol, item.filename, content)
        return ProtocolHandle(protocol_id=protocol_id, filename=item.filename)

    async def start(
        self,
        protocol: ProtocolHandle,
        params: Optional[Mapping[str, ParamValue]] = None,
    ) -> RunHandle:
        """
        Create a run for a registered protocol and play it.

        Raises
        ------
        RunInProgressError
            If an earlier run has not reached a terminal status, e.g. after
            a local timeout left it going on the robot.
        StartError
            If the run cannot be created or played.
        MalformedResponseError
            If the robot's answer carries no run id.
        """
        if self._active_run is not None:
            raise RunInProgressError(self._active_run.run_id)

        run_id = await self._run_blocking(self.api.create_run, protocol.protocol_id, params)
        run = RunHandle(run_id=run_id, protocol_id=protocol.protocol_id)
        self._active_run = run
        try:
            await self._run_blocking(self.api.play_run, run_id)
        except BaseException:
            # The run exists but never started; nothing is active on the robot.
            self._active_run = None
            raise
        logger.info("Started run %s (protocol %s)", run_id, protocol.protocol_id)
        return run

    async def await_completion(
        self,
        run: RunHandle,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> RunStatus:
        """
        Poll a run until it reaches a terminal status.

        Yields to the event loop between polls. A final poll is made when the
        deadline is reached, so a run finishing right at the deadline is
        still reported.

        Returns
        -------
        RunStatus
            The first terminal status observed: "succeeded" or "stopped".

        Raises
        ------
        RunFailedError
            If the run resolves to "failed"; carries the robot's error list.
        RunTimeoutError
            If no terminal status is seen within `timeout`. The run is left
            going on the robot.
        SequenceAborted
            If abort() was called while polling.
        """
        interval = self.poll_interval if poll_interval is None else poll_interval
        limit = self.run_timeout if timeout is None else timeout

        loop = asyncio.get_running_loop()
        deadline = loop.time() + limit
        previous: Optional[RunStatus] = None

        while True:
            if self._abort_event.is_set():
                await self._handle_abort(run)

            data = await self._run_blocking(self.api.get_run, run.run_id)
            status = normalise_status(data.get("status"))

            if status != previous:
                logger.debug("Run %s: %s -> %s", run.run_id, previous, status)
                if status == "paused":
                    await self._handle_pause(run)
                previous = status

            if status in TERMINAL_STATUSES:
                self._active_run = None
                if status == "failed":
                    raise RunFailedError(run.run_id, data.get("errors"))
                logger.info("Run %s finished: %s", run.run_id, status)
                return status

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise RunTimeoutError(run.run_id, limit, last_status=status)
            await asyncio.sleep(min(interval, remaining))

    # --------------------------------------------------------
    # Sequence
    # --------------------------------------------------------

    async def run_sequence(
        self,
        items: Sequence[WorkItem],
        feedback_hook: Optional[FeedbackHook] = None,
    ) -> List[RunOutcome]:
        """
        Execute work items in order, one run at a time.

        Before each item the feedback hook (if any) is called with the
        previous outcome (None for the first item) and the item about to
        run. It may return a replacement item, e.g. with a temperature
        target recomputed from a sensor reading, or None to keep it.

        Returns
        -------
        list[RunOutcome]
            One outcome per item, in submission order. All "succeeded".

        Raises
        ------
        RobotError
            The first failure, with `item_index` and `item` set. Items after
            the failing one are never submitted.
        """
        outcomes: List[RunOutcome] = []
        previous: Optional[RunOutcome] = None

        for index, item in enumerate(items):
            try:
                self._check_abort(index)
                if feedback_hook is not None:
                    adjusted = await _maybe_await(feedback_hook(previous, item))
                    if adjusted is not None:
                        item = adjusted
                    # the hook may have taken a while (sensor reads, user input)
                    self._check_abort(index)

                logger.info("Item %d/%d: %s %s", index + 1, len(items), item.label, dict(item.params))
                protocol = await self.submit(item)
                run = await self.start(protocol, item.runtime_params or None)
                status = await self.await_completion(run)
                if status != "succeeded":
                    raise RunStoppedError(run.run_id, status)

            except (RobotError, TemplateError, SequenceDefinitionError) as e:
                e.item_index = index
                e.item = item
                logger.error("Sequence halted at %s", e.describe())
                raise

            if self.delete_protocols:
                await self._delete_protocol(protocol)

            previous = RunOutcome(index=index, item=item, protocol=protocol, run=run, status=status)
            outcomes.append(previous)

        return outcomes

    # --------------------------------------------------------
    # Pause / abort handling
    # --------------------------------------------------------

    def _check_abort(self, index: int) -> None:
        if self._abort_event.is_set():
            raise SequenceAborted(f"Sequence aborted before item {index}")

    async def _handle_pause(self, run: RunHandle) -> None:
        logger.warning("Run %s is paused and waits for intervention", run.run_id)
        if self.on_pause is None:
            return
        if await _maybe_await(self.on_pause(run)):
            logger.info("Resuming run %s", run.run_id)
            await self._run_blocking(self.api.resume_run, run.run_id)

    async def _handle_abort(self, run: RunHandle) -> None:
        """Optionally stop the in-flight run, then give up on the sequence."""
        if self.stop_on_abort:
            logger.warning("Stopping run %s on abort", run.run_id)
            await self._run_blocking(self.api.stop_run, run.run_id)
        else:
            logger.warning("Aborted; run %s is left running on the robot", run.run_id)
        raise SequenceAborted(f"Sequence aborted while run {run.run_id} was active")

    async def _delete_protocol(self, protocol: ProtocolHandle) -> None:
        try:
            await self._run_blocking(self.api.delete_protocol, protocol.protocol_id)
        except RobotError as e:
            logger.warning("Could not delete protocol %s: %s", protocol.protocol_id, e)
