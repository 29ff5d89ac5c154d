"""Command, job and local client models"""

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..exceptions import InvalidAction, CommandValidationError

PARAMETER_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9:_-]+$")
MAX_PARAMETER_VALUE_LENGTH = 120
MAX_PARAMETERS = 32
MAX_NOTE_LENGTH = 500


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AdminAction(str, Enum):
    """The closed allow-list. Adding a member requires a matching runner."""
    BUILD_CENTRAL = "build:central"
    BUILD_RASPBERRY = "build:raspberry"
    DEPLOY_RASPBERRY = "deploy:raspberry"
    TESTS_FULL = "tests:full"
    SYNC_CLIENTS = "sync:clients"
    MAINTENANCE_RESTART = "maintenance:restart"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


_STATUS_RANK = {
    JobStatus.QUEUED: 0,
    JobStatus.RUNNING: 1,
    JobStatus.SUCCEEDED: 2,
    JobStatus.FAILED: 2,
}


class Command(BaseModel):
    """Remote command as received over the fleet link"""
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str = Field(default_factory=lambda: f"cmd-{uuid.uuid4()}", min_length=1, max_length=128)
    action: AdminAction
    parameters: Dict[str, str] = Field(default_factory=dict)
    requested_by: str = Field(default="registry", alias="requestedBy", max_length=120)
    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")
    note: Optional[str] = Field(default=None, max_length=MAX_NOTE_LENGTH)

    @field_validator("parameters")
    @classmethod
    def _check_parameters(cls, value: Dict[str, str]) -> Dict[str, str]:
        if len(value) > MAX_PARAMETERS:
            raise ValueError(f"at most {MAX_PARAMETERS} parameters are allowed")
        for key, item in value.items():
            if not PARAMETER_KEY_PATTERN.match(key):
                raise ValueError(f"parameter key {key!r} contains unsupported characters")
            if len(item) > MAX_PARAMETER_VALUE_LENGTH:
                raise ValueError(f"parameter {key!r} exceeds {MAX_PARAMETER_VALUE_LENGTH} characters")
        return value


def parse_command(payload: Any) -> Command:
    """Validate a raw command payload.

    Raises:
        InvalidAction: unknown action or unsafe parameters
        CommandValidationError: payload is not an object at all
    """
    if isinstance(payload, Command):
        return payload
    if not isinstance(payload, Mapping):
        raise CommandValidationError(f"Command payload must be an object, got {type(payload).__name__}")
    try:
        return Command.model_validate(dict(payload))
    except ValidationError as e:
        raise InvalidAction(f"Invalid action payload: {_first_error(e)}") from e


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return str(error)
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else first.get("msg", str(error))


@dataclass
class Job:
    """Tracked lifecycle of one accepted command"""
    id: str
    action: AdminAction
    status: JobStatus
    created_at: str
    updated_at: str
    command_id: Optional[str] = None
    requested_by: str = "registry"
    parameters: Dict[str, str] = field(default_factory=dict)
    summary: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    def copy(self) -> "Job":
        return replace(self, parameters=dict(self.parameters), logs=list(self.logs))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'commandId': self.command_id,
            'action': self.action.value,
            'status': self.status.value,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'requestedBy': self.requested_by,
            'parameters': dict(self.parameters),
            'summary': self.summary,
            'logs': list(self.logs),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Job":
        return cls(
            id=data['id'],
            command_id=data.get('commandId'),
            action=AdminAction(data['action']),
            status=JobStatus(data['status']),
            created_at=data['createdAt'],
            updated_at=data.get('updatedAt', data['createdAt']),
            requested_by=data.get('requestedBy', 'registry'),
            parameters=dict(data.get('parameters') or {}),
            summary=data.get('summary'),
            logs=list(data.get('logs') or []),
        )


class ClientInput(BaseModel):
    """Payload accepted when an operator registers a local client"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=3, max_length=120)
    code: str = Field(min_length=2, max_length=50, pattern=r"^[a-z0-9-]+$")
    contact_email: Optional[str] = Field(default=None, alias="contactEmail", max_length=254)
    timezone: str = Field(default="Europe/Paris", max_length=80)
    site_count: int = Field(default=0, ge=0, alias="siteCount")

    @field_validator("contact_email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if value in (None, ""):
            return None
        if not re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", value):
            raise ValueError("contact email is not a valid address")
        return value


class LocalClient(ClientInput):
    """Client record kept next to the job history"""
    id: str = Field(default_factory=lambda: f"client-{uuid.uuid4()}")
    status: str = "active"
    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")
    last_sync_at: str = Field(default_factory=utc_now_iso, alias="lastSyncAt")
