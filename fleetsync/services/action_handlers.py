"""
Default action runners for the command executor.
Each allow-listed action runs an operator-configured shell hook
(``ACTION_HOOK_<ACTION>``); without a hook the work is simulated.
"""

import asyncio
import logging
import os
from typing import Callable, Dict, Mapping, Optional

from .. import config
from ..exceptions import ExecutionFailure
from ..models import AdminAction, Job

logger = logging.getLogger(__name__)

HOOK_OUTPUT_TAIL_LINES = 20


def hook_env_name(action: AdminAction) -> str:
    """``build:central`` -> ``ACTION_HOOK_BUILD_CENTRAL``"""
    return config.ACTION_HOOK_PREFIX + action.value.upper().replace(":", "_").replace("-", "_")


def parameter_env(parameters: Mapping[str, str]) -> Dict[str, str]:
    """Expose job parameters to hooks as ``FLEETSYNC_PARAM_<KEY>``"""
    return {
        "FLEETSYNC_PARAM_" + key.upper().replace(":", "_").replace("-", "_"): value
        for key, value in parameters.items()
    }


class ActionHandlers:
    """Runners for every member of :class:`AdminAction`."""

    def __init__(self, hooks: Optional[Mapping[AdminAction, str]] = None, simulated_step: float = None):
        if hooks is None:
            hooks = {
                action: os.environ[hook_env_name(action)]
                for action in AdminAction
                if os.environ.get(hook_env_name(action))
            }
        self.hooks = dict(hooks)
        self.simulated_step = config.SIMULATED_STEP_S if simulated_step is None else simulated_step
        self._sync_clients: Optional[Callable[[], int]] = None

    def attach_client_sync(self, sync_all_clients: Callable[[], int]):
        """Set after the executor exists; ``sync:clients`` refreshes its clients"""
        self._sync_clients = sync_all_clients

    def as_runners(self):
        return {
            AdminAction.BUILD_CENTRAL: self.handle_build_central,
            AdminAction.BUILD_RASPBERRY: self.handle_build_raspberry,
            AdminAction.DEPLOY_RASPBERRY: self.handle_deploy_raspberry,
            AdminAction.TESTS_FULL: self.handle_tests_full,
            AdminAction.SYNC_CLIENTS: self.handle_sync_clients,
            AdminAction.MAINTENANCE_RESTART: self.handle_maintenance_restart,
        }

    async def handle_build_central(self, job: Job, log) -> str:
        return await self._run_hook_or_simulate(job, log)

    async def handle_build_raspberry(self, job: Job, log) -> str:
        return await self._run_hook_or_simulate(job, log)

    async def handle_deploy_raspberry(self, job: Job, log) -> str:
        target = job.parameters.get("target", "all sites")
        log(f"Deploying to {target}")
        return await self._run_hook_or_simulate(job, log)

    async def handle_tests_full(self, job: Job, log) -> str:
        return await self._run_hook_or_simulate(job, log)

    async def handle_sync_clients(self, job: Job, log) -> str:
        summary = await self._run_hook_or_simulate(job, log)
        if self._sync_clients is not None:
            count = self._sync_clients()
            log(f"Refreshed {count} client(s)")
            return f"{summary}; {count} client(s) synced"
        return summary

    async def handle_maintenance_restart(self, job: Job, log) -> str:
        logger.warning("Maintenance restart requested")
        return await self._run_hook_or_simulate(job, log)

    async def _run_hook_or_simulate(self, job: Job, log) -> str:
        hook = self.hooks.get(job.action)
        if not hook:
            logger.info(f"No hook configured for {job.action.value}, simulating")
            await asyncio.sleep(self.simulated_step)
            return "Completed (simulated)"
        return await self._run_hook(hook, job, log)

    async def _run_hook(self, hook: str, job: Job, log) -> str:
        log(f"Running hook: {hook}")
        env = {**os.environ, **parameter_env(job.parameters), "FLEETSYNC_JOB_ID": job.id}
        try:
            proc = await asyncio.create_subprocess_shell(
                hook,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except OSError as e:
            raise ExecutionFailure(f"Could not start hook: {e}") from e

        output, _ = await proc.communicate()
        lines = output.decode("utf-8", errors="replace").splitlines()
        for line in lines[-HOOK_OUTPUT_TAIL_LINES:]:
            log(line)

        if proc.returncode != 0:
            raise ExecutionFailure(f"Hook exited with code {proc.returncode}")
        return f"Hook finished ({len(lines)} line(s) of output)"
