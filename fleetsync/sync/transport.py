"""
Transport abstraction for the fleet link, plus an in-process loopback.

A transport moves whole protocol frames. ``receive()`` raises
TransportClosed once the peer goes away; frames that fail to decode raise
ProtocolError and the connection stays usable.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Tuple

from ..exceptions import TransportClosed
from . import protocol
from .protocol import Message

logger = logging.getLogger(__name__)

_CLOSED = object()


class Transport(ABC):
    """One bidirectional connection to the registry"""

    @abstractmethod
    async def connect(self):
        """Open the connection; raises TransportFailure"""

    @abstractmethod
    async def send(self, message: Message):
        """Send one frame; raises TransportFailure"""

    @abstractmethod
    async def receive(self) -> Message:
        """Next frame from the peer; raises TransportClosed"""

    @abstractmethod
    async def close(self):
        """Idempotent"""


class Endpoint:
    """One side of an in-memory duplex channel carrying encoded frames"""

    def __init__(self, inbox: asyncio.Queue, outbox: asyncio.Queue):
        self._inbox = inbox
        self._outbox = outbox
        self.closed = False

    async def send(self, message: Message):
        if self.closed:
            raise TransportClosed("Endpoint is closed")
        await self._outbox.put(protocol.encode(message))

    async def receive(self) -> Message:
        if self.closed:
            raise TransportClosed("Endpoint is closed")
        frame = await self._inbox.get()
        if frame is _CLOSED:
            self.closed = True
            raise TransportClosed("Peer closed the connection")
        return protocol.decode(frame)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._outbox.put_nowait(_CLOSED)
        # unblock our own pending receive()
        self._inbox.put_nowait(_CLOSED)


def endpoint_pair() -> Tuple[Endpoint, Endpoint]:
    a_to_b = asyncio.Queue()
    b_to_a = asyncio.Queue()
    return Endpoint(inbox=b_to_a, outbox=a_to_b), Endpoint(inbox=a_to_b, outbox=b_to_a)


class LoopbackTransport(Transport):
    """Connects to an in-process CentralRegistry (simulation mode and tests)"""

    def __init__(self, registry):
        self.registry = registry
        self._endpoint = None

    async def connect(self):
        self._endpoint = self.registry.open_connection()
        logger.info("Connected to in-process registry")

    async def send(self, message: Message):
        if self._endpoint is None:
            raise TransportClosed("Not connected")
        await self._endpoint.send(message)

    async def receive(self) -> Message:
        if self._endpoint is None:
            raise TransportClosed("Not connected")
        return await self._endpoint.receive()

    async def close(self):
        if self._endpoint is not None:
            self._endpoint.close()
            self._endpoint = None
