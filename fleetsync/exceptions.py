"""Error taxonomy shared by the agent components"""


class FleetSyncError(Exception):
    """Base class for all fleetsync errors"""


class AuthenticationError(FleetSyncError):
    """Registry refused the site credentials"""


class CommandValidationError(FleetSyncError):
    """Malformed command payload; no job is created"""


class InvalidAction(CommandValidationError):
    """Command action is outside the allow-list or its parameters are unsafe"""


class ExecutionFailure(FleetSyncError):
    """An accepted job could not complete"""


class InvalidPhase(FleetSyncError):
    """Phase token is not one of neutral/before/during/after"""


class PlaylistResolutionFailure(FleetSyncError):
    """No configured media resolved to an existing file"""


class TransportFailure(FleetSyncError):
    """Connection refused, timed out or dropped"""


class TransportClosed(TransportFailure):
    """The peer closed the connection"""


class ProtocolError(FleetSyncError):
    """A frame on the fleet link could not be decoded"""
