"""MQTT transport for the fleet link"""

import asyncio
import logging
from typing import Optional

import paho.mqtt.client as mqtt

from .. import config
from ..exceptions import TransportClosed, TransportFailure
from . import protocol
from .protocol import Message
from .transport import Transport

logger = logging.getLogger(__name__)

_CLOSED = object()


def uplink_topic(site_id: str, prefix: str = None) -> str:
    return f"{prefix or config.MQTT_TOPIC_PREFIX}/{site_id}/up"


def downlink_topic(site_id: str, prefix: str = None) -> str:
    return f"{prefix or config.MQTT_TOPIC_PREFIX}/{site_id}/down"


class MQTTTransport(Transport):
    """Site link over an MQTT broker.

    The device publishes on ``<prefix>/<site>/up`` and listens on
    ``<prefix>/<site>/down``. paho runs its network loop in a background
    thread; its callbacks hand frames to the event loop through a queue.
    """

    def __init__(
        self,
        site_id: str,
        broker: str = None,
        port: int = None,
        keepalive: int = None,
        username: str = None,
        password: str = None,
        topic_prefix: str = None,
        tls: bool = None,
        connect_timeout: float = None,
    ):
        self.site_id = site_id
        self.broker = broker or config.MQTT_BROKER
        self.port = port or config.MQTT_PORT
        self.keepalive = keepalive or config.MQTT_KEEPALIVE
        self.username = config.MQTT_USERNAME if username is None else username
        self.password = config.MQTT_PASSWORD if password is None else password
        self.tls = config.MQTT_TLS if tls is None else tls
        self.connect_timeout = config.AUTH_TIMEOUT_S if connect_timeout is None else connect_timeout
        self.up_topic = uplink_topic(site_id, topic_prefix)
        self.down_topic = downlink_topic(site_id, topic_prefix)

        self.client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._ready: Optional[asyncio.Future] = None
        self.connected = False

    async def connect(self):
        self._loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue()
        self._ready = self._loop.create_future()

        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"fleetsync-{self.site_id}",
        )
        client.on_connect = self._on_connect
        client.on_subscribe = self._on_subscribe
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        if self.username and self.password:
            client.username_pw_set(self.username, self.password)
        if self.tls:
            client.tls_set()
        self.client = client

        logger.info(f"Connecting to MQTT broker at {self.broker}:{self.port}")
        try:
            client.connect_async(self.broker, self.port, self.keepalive)
            client.loop_start()
            await asyncio.wait_for(self._ready, self.connect_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise TransportFailure(f"MQTT broker did not answer within {self.connect_timeout}s")
        except TransportFailure:
            await self.close()
            raise
        except (OSError, ValueError) as e:
            await self.close()
            raise TransportFailure(f"Failed to connect to MQTT broker: {e}") from e

    async def send(self, message: Message):
        if self.client is None or not self.connected:
            raise TransportClosed("MQTT not connected")
        info = self.client.publish(self.up_topic, protocol.encode(message), qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportFailure(f"MQTT publish failed: {mqtt.error_string(info.rc)}")
        logger.debug(f"Published {message.type.value} to {self.up_topic}")

    async def receive(self) -> Message:
        if self._inbox is None:
            raise TransportClosed("MQTT not connected")
        frame = await self._inbox.get()
        if frame is _CLOSED:
            raise TransportClosed("MQTT connection lost")
        return protocol.decode(frame)

    async def close(self):
        client, self.client = self.client, None
        self.connected = False
        if client is None:
            return
        client.disconnect()
        client.loop_stop()
        logger.info("Disconnected from MQTT broker")

    # ============ paho callbacks (network thread) ============

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")
            self._threadsafe(self._fail_ready, TransportFailure(f"MQTT connection refused: {reason_code}"))
            return
        self.connected = True
        logger.info("Connected to MQTT broker successfully")
        client.subscribe(self.down_topic, qos=1)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        if any(rc.is_failure for rc in reason_code_list):
            self._threadsafe(self._fail_ready, TransportFailure(f"Subscription to {self.down_topic} refused"))
            return
        logger.info(f"Subscribed to {self.down_topic}")
        self._threadsafe(self._resolve_ready)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        self.connected = False
        if reason_code.is_failure:
            logger.warning(f"Unexpected MQTT disconnection ({reason_code})")
        self._threadsafe(self._fail_ready, TransportClosed("MQTT disconnected during connect"))
        self._threadsafe(self._inbox.put_nowait, _CLOSED)

    def _on_message(self, client, userdata, msg):
        self._threadsafe(self._inbox.put_nowait, msg.payload)

    def _threadsafe(self, callback, *args):
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, *args)

    def _resolve_ready(self):
        if not self._ready.done():
            self._ready.set_result(True)

    def _fail_ready(self, error: Exception):
        if not self._ready.done():
            self._ready.set_exception(error)
