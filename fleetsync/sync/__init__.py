"""Fleet link: wire protocol, transports, registry and the device client"""

from .protocol import Message, MessageType, ResultStatus, decode, encode
from .transport import Endpoint, LoopbackTransport, Transport, endpoint_pair
from .mqtt_transport import MQTTTransport
from .registry import CentralRegistry
from .fleet_link import FleetLink

__all__ = [
    'Message', 'MessageType', 'ResultStatus', 'decode', 'encode',
    'Endpoint', 'LoopbackTransport', 'Transport', 'endpoint_pair',
    'MQTTTransport', 'CentralRegistry', 'FleetLink',
]
