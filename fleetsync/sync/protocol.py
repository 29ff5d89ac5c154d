"""
Fleet link wire protocol.

Every frame is a JSON object ``{"type": <message type>, "data": {...}}``.
The device sends authenticate, heartbeat, metrics and command_result; the
registry sends authenticated, auth_error, command and phase_change.
"""

import json
import time
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..exceptions import ProtocolError
from ..models import Command, DeviceIdentity, MetricsSnapshot


class MessageType(str, Enum):
    AUTHENTICATE = "authenticate"
    AUTHENTICATED = "authenticated"
    AUTH_ERROR = "auth_error"
    HEARTBEAT = "heartbeat"
    METRICS = "metrics"
    COMMAND = "command"
    COMMAND_RESULT = "command_result"
    PHASE_CHANGE = "phase_change"


class ResultStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: MessageType
    data: Dict[str, Any] = Field(default_factory=dict)


class AuthenticatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    site_id: str = Field(alias="siteId", min_length=1)
    api_key: str = Field(alias="apiKey", min_length=1)


class CommandResultPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    status: ResultStatus
    summary: Optional[str] = None
    job_id: Optional[str] = Field(default=None, alias="jobId")


class PhaseChangePayload(BaseModel):
    phase: str


def encode(message: Message) -> str:
    return json.dumps({'type': message.type.value, 'data': message.data})


def decode(raw: Union[str, bytes]) -> Message:
    """Parse one frame.

    Raises:
        ProtocolError: not JSON, not an envelope, or an unknown message type
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return Message.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        raise ProtocolError(f"Invalid frame: {e}") from e


def payload(message: Message, model):
    """Validate ``message.data`` against ``model``; raises ProtocolError"""
    try:
        return model.model_validate(message.data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {message.type.value} payload: {e}") from e


def _epoch_ms() -> int:
    return int(time.time() * 1000)


# ============ Device -> registry ============

def authenticate(identity: DeviceIdentity) -> Message:
    return Message(type=MessageType.AUTHENTICATE, data=identity.to_dict())


def heartbeat(site_id: str) -> Message:
    return Message(type=MessageType.HEARTBEAT, data={'siteId': site_id, 'timestamp': _epoch_ms()})


def metrics(site_id: str, snapshot: MetricsSnapshot) -> Message:
    return Message(
        type=MessageType.METRICS,
        data={'siteId': site_id, 'timestamp': _epoch_ms(), 'snapshot': snapshot.to_dict()},
    )


def command_result(command_id: str, status: ResultStatus, summary: Optional[str] = None,
                   job_id: Optional[str] = None) -> Message:
    result = CommandResultPayload(id=command_id, status=status, summary=summary, job_id=job_id)
    return Message(type=MessageType.COMMAND_RESULT, data=result.model_dump(mode="json", by_alias=True))


# ============ Registry -> device ============

def authenticated(site_id: str) -> Message:
    return Message(
        type=MessageType.AUTHENTICATED,
        data={'message': "Authentication successful", 'siteId': site_id},
    )


def auth_error(message: str) -> Message:
    return Message(type=MessageType.AUTH_ERROR, data={'message': message})


def command(cmd: Command) -> Message:
    return Message(type=MessageType.COMMAND, data=cmd.model_dump(mode="json", by_alias=True))


def phase_change(phase: str) -> Message:
    return Message(type=MessageType.PHASE_CHANGE, data={'phase': phase})
