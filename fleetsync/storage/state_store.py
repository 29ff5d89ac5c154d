"""
JSON persistence for the command executor.
Holds the job history and the local client list in a single file.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import List

from ..models import Job, LocalClient
from ..utils.files import atomic_write_json

logger = logging.getLogger(__name__)


@dataclass
class AdminState:
    jobs: List[Job] = field(default_factory=list)
    clients: List[LocalClient] = field(default_factory=list)

    def to_dict(self):
        return {
            'jobs': [job.to_dict() for job in self.jobs],
            'clients': [client.model_dump(by_alias=True) for client in self.clients],
        }


class JobStateStore:
    """File-backed store for jobs and clients."""

    def __init__(self, file_path: str):
        self.file_path = file_path
        directory = os.path.dirname(os.path.abspath(file_path))
        os.makedirs(directory, exist_ok=True)

    def load(self, initial: AdminState) -> AdminState:
        """Load state from disk.

        Missing keys take the value from ``initial``. When no file exists yet
        the initial state is written so the next boot finds it.
        """
        if not os.path.exists(self.file_path):
            logger.info(f"No admin state at {self.file_path}, writing defaults")
            self.persist(initial)
            return initial

        try:
            with open(self.file_path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning(f"Unable to read admin state from {self.file_path}, falling back to defaults: {e}")
            return initial

        if not isinstance(raw, dict):
            logger.warning(f"Admin state at {self.file_path} is not an object, falling back to defaults")
            return initial

        jobs = initial.jobs
        if 'jobs' in raw:
            jobs = []
            for item in raw['jobs'] or []:
                try:
                    jobs.append(Job.from_dict(item))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping unreadable job record: {e}")

        clients = initial.clients
        if 'clients' in raw:
            clients = []
            for item in raw['clients'] or []:
                try:
                    clients.append(LocalClient.model_validate(item))
                except ValueError as e:
                    logger.warning(f"Skipping unreadable client record: {e}")

        return AdminState(jobs=jobs, clients=clients)

    def persist(self, state: AdminState):
        try:
            atomic_write_json(self.file_path, state.to_dict())
        except OSError as e:
            logger.error(f"Unable to persist admin state to {self.file_path}: {e}")

    def reset(self, initial: AdminState):
        self.persist(initial)
