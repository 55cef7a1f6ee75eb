from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Literal, Optional

from opentrons_sequencer.common.config import Settings
from opentrons_sequencer.common.custom_types import RobotsConfig
from opentrons_sequencer.common.errors import (
    RobotError,
    SequenceAborted,
    SequenceDefinitionError,
    TemplateError,
)
from opentrons_sequencer.protocol.sequence import WorkItem
from opentrons_sequencer.runner.http_handler import RobotAPI
from opentrons_sequencer.runner.orchestrator import RunOrchestrator, RunOutcome

logger = logging.getLogger(__name__)

JobStatus = Literal[
            "created",
            "running",
            "completed",
            "aborted",
            "failed"]

@dataclass
class Robot:
    """
    Static description of a robot accessible by the backend.

    This object does not represent runtime state, only connection metadata.
    Runtime exclusivity is enforced separately via asyncio locks.

    Attributes
    ----------
    id :
        Logical robot identifier used by API clients.
    url :
        Base URL of the robot HTTP server, e.g. http://10.0.0.5:31950
    """
    id: str
    url: str

@dataclass
class JobState:
    """
    Authoritative, mutable state of a single job execution.

    This structure represents the *current* state only. It is rewritten
    on each state transition and exposed through the API.

    Attributes
    ----------
    job_id :
        Unique identifier of the job.
    robot_id :
        Robot assigned to this job.
    total_steps :
        Number of work items in the sequence.
    status :
        High-level lifecycle status of the job.
    current_step :
        Index of the currently executing item (0-based).
    failed_step :
        Index of the item that stopped the job, if any.
    run_ids :
        Run ids of the finished items, in submission order.
    message :
        Human-readable status message.
    updated_at :
        Unix timestamp of last state update.
    """
    job_id: str
    robot_id: str
    total_steps: int
    status: JobStatus = "created"
    current_step: Optional[int] = None
    failed_step: Optional[int] = None
    run_ids: List[str] = field(default_factory=list)
    message: Optional[str] = None
    updated_at: float = field(default_factory=time.time)


ApiFactory = Callable[[Robot], RobotAPI]


def load_robots(path: Optional[Path]) -> Dict[str, Robot]:
    """
    Read the robot registry: a JSON object mapping robot id -> {"url": ...}.
    A missing path yields an empty registry.
    """
    if path is None:
        return {}
    with open(path, "r") as f:
        raw: RobotsConfig = json.load(f)
    return {rid: Robot(id=rid, url=info["url"]) for rid, info in raw.items()}


class JobManager:
    """
    Central coordinator for backend job execution.

    JobManager is responsible for:
    - job registration and lifecycle management
    - enforcing robot exclusivity
    - creating and owning one RunOrchestrator per job
    - exposing job state to the API layer

    Each job runs its whole sequence in a background asyncio.Task,
    so the API layer stays responsive.
    JobManager itself does not talk to robots directly.
    """
    def __init__(
        self,
        *,
        robots: Dict[str, Robot],
        settings: Settings,
        api_factory: Optional[ApiFactory] = None,
    ):
        """
        Triggered when backend is started.

        Parameters
        ----------
        robots: Dict[str, Robot]
            Mapping of robot_id to Robot instances.
        settings: Settings
            Polling, timeout and retry configuration handed to each job.
        api_factory: Callable[[Robot], RobotAPI], optional
            Builds the robot client of a job. Defaults to an HTTP client
            configured from `settings`.
        """
        self.robots = robots
        self.settings = settings
        self.api_factory = api_factory or (
            lambda robot: RobotAPI.from_settings(settings, robot_url=robot.url)
        )

        self._robot_locks: Dict[str, asyncio.Lock] = {
            rid: asyncio.Lock() for rid in robots
        }

        self._states: Dict[str, JobState] = {}
        self._jobs: Dict[str, RunOrchestrator] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

        # Protect job registration
        self._manager_lock = asyncio.Lock()

    # --------------------------------------------------------
    # Public state access
    # --------------------------------------------------------

    def get_state(self, job_id: str) -> JobState:
        if job_id not in self._states:
            raise KeyError(f"Unknown job: {job_id}")
        return self._states[job_id]

    def get_task(self, job_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(job_id)

    # --------------------------------------------------------
    # Entry point
    # --------------------------------------------------------

    async def submit_job(
        self,
        *,
        job_id: str,
        robot_id: str,
        items: List[WorkItem],
    ) -> JobState:
        """
        Register a job and start executing its sequence in the background.

        Parameters
        ----------
        job_id : str
            Unique job ID.
        robot_id : str
            Target robot ID.
        items : list[WorkItem]
            The sequence to execute, in order.

        Returns
        -------
        JobState :
            Initial state of the created job.

        Raises
        ------
        KeyError
            If the robot is unknown.
        RuntimeError
            If the job id is taken or the robot is busy with another job.
        """
        lock = self._get_robot_lock(robot_id)

        async with self._manager_lock:
            if job_id in self._states:
                raise RuntimeError(f"Job already exists: {job_id}")
            if lock.locked():
                raise RuntimeError(f"Robot busy: {robot_id}")
            await lock.acquire()

            self._states[job_id] = JobState(
                job_id=job_id,
                robot_id=robot_id,
                total_steps=len(items),
            )

        try:
            api = self.api_factory(self.robots[robot_id])
            orchestrator = RunOrchestrator(
                api,
                poll_interval=self.settings.poll_interval,
                run_timeout=self.settings.run_timeout,
                delete_protocols=self.settings.delete_protocols,
            )
            self._jobs[job_id] = orchestrator

            self._update_state(
                job_id,
                status="running",
                message=f"Job started ({len(items)} steps)",
            )

            self._tasks[job_id] = asyncio.create_task(
                self._feeder(job_id, orchestrator, items),
                name=f"feeder:{job_id}",
            )
            return self._states[job_id]

        except Exception:
            lock.release()
            self._update_state(job_id, status="failed", message="Failed to start job")
            raise

    # --------------------------------------------------------
    # Abort
    # --------------------------------------------------------

    async def abort_job(self, job_id: str) -> JobState:
        """
        Ask a running job to stop issuing work items.

        The run currently on the robot is left going; the job ends as
        "aborted" once the orchestrator notices the request.
        """
        state = self.get_state(job_id)
        if state.status in ("completed", "failed", "aborted"):
            return state

        orchestrator = self._jobs.get(job_id)
        if orchestrator:
            orchestrator.abort()
        return state

    # --------------------------------------------------------
    # Internals
    # --------------------------------------------------------

    async def _feeder(
        self,
        job_id: str,
        orchestrator: RunOrchestrator,
        items: List[WorkItem],
    ) -> None:
        """
        Background task executing all items of a job sequentially.

        This coroutine:
        - runs independently of API request handlers
        - updates job state between items
        - ensures robot resources are released on completion or failure
        """
        state = self._states[job_id]

        def track_progress(previous: Optional[RunOutcome], item: WorkItem) -> None:
            step = 0 if previous is None else previous.index + 1
            if previous is not None:
                state.run_ids.append(previous.run.run_id)
            self._update_state(
                job_id,
                current_step=step,
                message=f"Executing step {step} ({item.label})",
            )

        try:
            outcomes = await orchestrator.run_sequence(items, feedback_hook=track_progress)
            self._update_state(
                job_id,
                status="completed",
                run_ids=[o.run.run_id for o in outcomes],
                message="Job completed",
            )

        except asyncio.CancelledError:
            self._update_state(job_id, status="aborted", message="Job cancelled")
            raise

        except SequenceAborted as e:
            self._update_state(job_id, status="aborted", failed_step=e.item_index, message=e.describe())

        except (RobotError, TemplateError, SequenceDefinitionError) as e:
            self._update_state(job_id, status="failed", failed_step=e.item_index, message=e.describe())

        except Exception as e:
            self._update_state(job_id, status="failed", message=str(e))
            raise

        finally:
            await self._finalize_job(job_id)

    async def _finalize_job(self, job_id: str) -> None:
        """
        Finalize job execution.

        This method:
        - closes the job's robot client
        - releases the robot lock

        It is guaranteed to run exactly once per job.
        """
        state = self._states[job_id]
        orchestrator = self._jobs.pop(job_id, None)
        if orchestrator is not None:
            orchestrator.api.close()

        lock = self._robot_locks[state.robot_id]
        if lock.locked():
            lock.release()
        logger.info("Job %s finished: %s", job_id, state.status)

    # --------------------------------------------------------
    # Utilities
    # --------------------------------------------------------

    def _get_robot_lock(self, robot_id: str) -> asyncio.Lock:
        if robot_id not in self._robot_locks:
            raise KeyError(f"Unknown robot: {robot_id}")
        return self._robot_locks[robot_id]

    def _update_state(self, job_id: str, **changes) -> None:
        state = self._states[job_id]
        for k, v in changes.items():
            setattr(state, k, v)
        state.updated_at = time.time()
