"""
Command Executor - turns validated commands into tracked jobs.

Job flow:
1. ``submit()`` validates the command against the allow-list
2. A job is created in ``queued`` state and published to subscribers
3. The action runner executes in its own task: ``running`` -> ``succeeded``/``failed``
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from ..exceptions import ExecutionFailure
from ..models import AdminAction, ClientInput, Job, JobStatus, LocalClient, parse_command
from ..storage import AdminState, JobStateStore

logger = logging.getLogger(__name__)

JobListener = Callable[[Job], None]
JobLog = Callable[[str], None]
ActionRunner = Callable[[Job, JobLog], Awaitable[Optional[str]]]


def _default_clients() -> List[LocalClient]:
    return [
        LocalClient(
            id="cli-seed-001",
            name="Demo Club",
            code="demo-club",
            contact_email="demo@example.com",
            timezone="Europe/Paris",
            site_count=3,
        )
    ]


def _log_line(moment: datetime, text: str) -> str:
    return f"{moment.isoformat()} • {text}"


class CommandExecutor:
    """Owns the job collection; everything else reads through its methods."""

    def __init__(
        self,
        store: JobStateStore,
        runners: Mapping[AdminAction, ActionRunner],
        diagnostics=None,
    ):
        missing = [action.value for action in AdminAction if action not in runners]
        if missing:
            raise ValueError(f"No runner registered for actions: {', '.join(missing)}")

        self._store = store
        self._runners: Dict[AdminAction, ActionRunner] = dict(runners)
        self._diagnostics = diagnostics
        self._listeners: Dict[int, JobListener] = {}
        self._next_token = 0
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks = set()

        state = store.load(AdminState(jobs=[], clients=_default_clients()))
        self._jobs: Dict[str, Job] = {job.id: job for job in state.jobs}
        self._clients: List[LocalClient] = list(state.clients)
        self._recover_interrupted_jobs()
        logger.info(f"CommandExecutor ready with {len(self._jobs)} job(s) in history")

    # ============ Submission ============

    def submit(self, command: Any) -> Job:
        """Validate ``command`` and start a job for it.

        Must be called from the running event loop. A command id that already
        has a job returns that job instead of starting a second one.

        Raises:
            InvalidAction: action outside the allow-list or unsafe parameters
        """
        validated = parse_command(command)

        existing = self.job_for_command(validated.id)
        if existing is not None:
            logger.info(f"Command {validated.id} already tracked as {existing.id}, not re-executing")
            return existing

        now = datetime.now(timezone.utc)
        job = Job(
            id=f"job-{uuid.uuid4()}",
            command_id=validated.id,
            action=validated.action,
            status=JobStatus.QUEUED,
            created_at=now.isoformat(),
            updated_at=now.isoformat(),
            requested_by=validated.requested_by,
            parameters=dict(validated.parameters),
            summary=validated.note,
            logs=[_log_line(now, f"Request received for {validated.action.value}")],
        )
        self._jobs = {job.id: job, **self._jobs}
        self._locks[job.id] = asyncio.Lock()
        self._persist()
        logger.info(f"Job {job.id} queued for {job.action.value} (command {job.command_id})")
        self._publish(job)

        task = asyncio.get_running_loop().create_task(self._run(job.id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job.copy()

    async def _run(self, job_id: str):
        job = self._jobs[job_id]
        runner = self._runners[job.action]
        lock = self._locks[job_id]
        try:
            await self._execute(job, runner, lock)
        finally:
            # terminal jobs never transition again
            self._locks.pop(job_id, None)

    async def _execute(self, job: Job, runner: ActionRunner, lock: asyncio.Lock):
        job_id = job.id
        async with lock:
            self._transition(job_id, JobStatus.RUNNING, "Execution started")

        try:
            summary = await runner(job.copy(), lambda text: self.append_log(job_id, text))
        except asyncio.CancelledError:
            async with lock:
                self._transition(job_id, JobStatus.FAILED, "Cancelled before completion",
                                 summary="cancelled")
            raise
        except Exception as e:
            logger.error(f"Job {job_id} ({job.action.value}) failed: {e}")
            if self._diagnostics is not None:
                self._diagnostics.record_job_failure()
            async with lock:
                self._transition(job_id, JobStatus.FAILED, f"Failed: {e}", summary=str(e))
        else:
            async with lock:
                self._transition(job_id, JobStatus.SUCCEEDED, "Completed successfully",
                                 summary=summary)
            logger.info(f"Job {job_id} ({job.action.value}) succeeded")

    def append_log(self, job_id: str, text: str):
        """Append a progress line to a running job"""
        job = self._jobs.get(job_id)
        if job is None or job.status.is_terminal:
            return
        now = self._next_timestamp(job)
        job.logs.append(_log_line(now, text))
        job.updated_at = now.isoformat()
        self._persist()

    def _transition(self, job_id: str, status: JobStatus, text: str, summary: Optional[str] = None):
        job = self._jobs[job_id]
        if status.rank <= job.status.rank:
            raise ExecutionFailure(f"Job {job_id} cannot move from {job.status.value} to {status.value}")

        now = self._next_timestamp(job)
        job.status = status
        job.updated_at = now.isoformat()
        job.logs.append(_log_line(now, text))
        if summary is not None:
            job.summary = summary
        self._persist()
        logger.debug(f"Job {job_id} -> {status.value}")
        self._publish(job)

    @staticmethod
    def _next_timestamp(job: Job) -> datetime:
        now = datetime.now(timezone.utc)
        previous = datetime.fromisoformat(job.updated_at)
        return now if now >= previous else previous

    def _recover_interrupted_jobs(self):
        interrupted = [job for job in self._jobs.values() if not job.status.is_terminal]
        for job in interrupted:
            now = self._next_timestamp(job)
            job.status = JobStatus.FAILED
            job.updated_at = now.isoformat()
            job.logs.append(_log_line(now, "Interrupted by agent restart"))
            job.summary = "interrupted"
        if interrupted:
            logger.warning(f"Marked {len(interrupted)} interrupted job(s) as failed")
            self._persist()

    # ============ Subscriptions ============

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """Register ``listener`` for future job updates; returns the unsubscribe function"""
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener

        def unsubscribe():
            self._listeners.pop(token, None)

        return unsubscribe

    def _publish(self, job: Job):
        for token, listener in list(self._listeners.items()):
            if token not in self._listeners:
                continue
            try:
                listener(job.copy())
            except Exception as e:
                logger.error(f"Job listener raised: {e}", exc_info=True)

    # ============ Queries ============

    def list_jobs(self) -> List[Job]:
        """Newest first"""
        return [job.copy() for job in self._jobs.values()]

    def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.copy() if job else None

    def job_for_command(self, command_id: str) -> Optional[Job]:
        for job in self._jobs.values():
            if job.command_id == command_id:
                return job.copy()
        return None

    async def wait_idle(self):
        """Wait for every in-flight job to reach a terminal state"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reset(self):
        """Operator action: forget the job history and reseed the clients"""
        self._jobs = {}
        self._locks = {}
        self._clients = _default_clients()
        self._store.reset(self._state())
        logger.info("Job history reset")

    # ============ Local clients ============

    def list_clients(self) -> List[LocalClient]:
        return [client.model_copy() for client in self._clients]

    def create_client(self, payload: Mapping[str, Any]) -> LocalClient:
        data = ClientInput.model_validate(dict(payload))
        client = LocalClient(**data.model_dump())
        self._clients = [client, *self._clients]
        self._persist()
        logger.info(f"Client {client.code} created")
        return client.model_copy()

    def sync_client(self, client_id: str) -> LocalClient:
        for index, client in enumerate(self._clients):
            if client.id == client_id:
                updated = client.model_copy(update={
                    'last_sync_at': datetime.now(timezone.utc).isoformat(),
                    'status': 'active',
                })
                self._clients[index] = updated
                self._persist()
                return updated.model_copy()
        raise KeyError(f"Client not found: {client_id}")

    def sync_all_clients(self) -> int:
        for client in list(self._clients):
            self.sync_client(client.id)
        return len(self._clients)

    # ============ Persistence ============

    def _state(self) -> AdminState:
        return AdminState(jobs=list(self._jobs.values()), clients=list(self._clients))

    def _persist(self):
        self._store.persist(self._state())
