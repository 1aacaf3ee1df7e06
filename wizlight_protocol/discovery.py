#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Discovery of WiZ devices on the local network.

A registration message with "register": false is broadcast to the device port once per
interval for the duration of the search. Every device that hears it replies with a
result carrying its MAC; each MAC is reported once.
"""

from __future__ import annotations

import asyncio
import datetime
import time

from wizlight_protocol.internal_types import *
from .pkg_logging import logger
from .constants import (
    WIZ_DEVICE_PORT,
    WIZ_BROADCAST_ADDRESS,
    DEFAULT_DISCOVERY_WAIT_TIME,
    DEFAULT_DISCOVERY_INTERVAL,
  )
from .wiz_message import WizResultMessage, RegistrationMessage
from .wiz_socket import WizListenerSocket, WizSubscriber, WizDatagramItem

# The address and MAC given to devices do not matter; register=false asks them to forget us.
DISCOVERY_PHONE_IP = "1.2.3.4"
DISCOVERY_PHONE_MAC = "AAAAAAAAAAAA"

def create_discovery_message() -> RegistrationMessage:
    return RegistrationMessage.create(
        DISCOVERY_PHONE_IP,
        DISCOVERY_PHONE_MAC,
        register=False,
        extra_params={ "id": "1" },
      )

class DiscoveredDevice:
    ip: str
    """The IP address the reply came from"""

    mac: str
    """The device MAC, as reported in the reply"""

    monotonic_time: float
    """The local time at which the reply was received, as returned by time.monotonic()."""

    utc_time: datetime.datetime
    """The UTC time at which the reply was received."""

    def __init__(self, ip: str, mac: str):
        self.ip = ip
        self.mac = mac
        self.monotonic_time = time.monotonic()
        self.utc_time = datetime.datetime.now(datetime.timezone.utc)

    def __str__(self) -> str:
        return f"DiscoveredDevice(ip={self.ip}, mac={self.mac})"

    def __repr__(self) -> str:
        return str(self)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, DiscoveredDevice):
            return False
        return self.ip == other.ip and self.mac == other.mac

    def __hash__(self) -> int:
        return hash((self.ip, self.mac))

    def to_json_data(self) -> JsonableDict:
        return { "ip": self.ip, "mac": self.mac }

class WizDiscoveryRequest(
        AsyncContextManager['WizDiscoveryRequest'],
        AsyncIterable[DiscoveredDevice]
      ):
    """Manages a single discovery search and its replies within an AsyncContextManager/AsyncIterable interface.

    Usage:
        async with WizDiscoveryRequest(...) as request:
            async for device in request:
                print(device.ip, device.mac)
                # It is possible to break out of the loop early if desired
    """

    broadcast_address: str
    port: int
    wait_time: float
    interval: float
    bind_address: str

    end_time: float = 0.0
    seen_macs: Set[str]

    client: WizListenerSocket
    dg_subscriber: Optional[WizSubscriber[WizDatagramItem]] = None
    _broadcast_task: Optional[asyncio.Task[None]] = None

    def __init__(
            self,
            broadcast_address: str=WIZ_BROADCAST_ADDRESS,
            port: int=WIZ_DEVICE_PORT,
            wait_time: float=DEFAULT_DISCOVERY_WAIT_TIME,
            interval: float=DEFAULT_DISCOVERY_INTERVAL,
            bind_address: str='0.0.0.0',
          ):
        """
        Parameters:
            broadcast_address:  The address to send the search to. Defaults to "255.255.255.255"; a subnet
                                  broadcast address (e.g., "192.168.1.255") or a single device address also works.
            port:               The device port. Defaults to 38899.
            wait_time:          How long (in seconds) to keep searching. Defaults to 5.0.
            interval:           How often (in seconds) to repeat the broadcast. Defaults to 1.0.
            bind_address:       The local address to send from. Defaults to all interfaces.
        """
        self.broadcast_address = broadcast_address
        self.port = port
        self.wait_time = wait_time
        self.interval = interval
        self.bind_address = bind_address
        self.seen_macs = set()
        self.client = WizListenerSocket(bind_address=bind_address, port=0)

    async def __aenter__(self) -> WizDiscoveryRequest:
        await self.client.start()
        try:
            # Subscribe before sending so that no replies are missed.
            self.dg_subscriber = self.client.subscribe()
            await self.dg_subscriber.__aenter__()
            self.end_time = time.monotonic() + self.wait_time
            logger.info(f"Starting discovery on {self.broadcast_address}:{self.port} for {self.wait_time}s")
            self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        except BaseException as e:
            await self._cleanup(type(e), e, e.__traceback__)
            raise
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self._cleanup(exc_type, exc, tb)
        return False

    async def _cleanup(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> None:
        if not self._broadcast_task is None:
            self._broadcast_task.cancel()
            try:
                await self._broadcast_task
            except asyncio.CancelledError:
                pass
            self._broadcast_task = None
        if not self.dg_subscriber is None:
            await self.dg_subscriber.__aexit__(exc_type, exc, tb)
            self.dg_subscriber = None
        await self.client.stop()
        try:
            await self.client.wait_for_done()
        except Exception as e:
            logger.debug(f"Discovery socket closed with exception: {e}")

    async def _broadcast_loop(self) -> None:
        message = create_discovery_message()
        socket_binding = self.client.socket_bindings[0]
        while time.monotonic() < self.end_time:
            try:
                socket_binding.sendto(message, (self.broadcast_address, self.port))
            except OSError as e:
                logger.warning(f"Discovery broadcast to {self.broadcast_address} failed: {e}")
            await asyncio.sleep(self.interval)

    async def iter_devices(self) -> AsyncIterator[DiscoveredDevice]:
        assert not self.dg_subscriber is None
        while True:
            remaining_time = self.end_time - time.monotonic()
            if remaining_time <= 0.0:
                break
            try:
                item = await asyncio.wait_for(self.dg_subscriber.receive(), remaining_time)
            except asyncio.TimeoutError:
                break
            if item is None:
                break
            _, addr, message = item
            if not isinstance(message, WizResultMessage):
                continue
            mac = message.mac
            if mac is None or mac in self.seen_macs:
                continue
            self.seen_macs.add(mac)
            device = DiscoveredDevice(addr[0], mac)
            logger.info(f"Discovered device at {device.ip} with MAC {device.mac}")
            yield device

    def __aiter__(self) -> AsyncIterator[DiscoveredDevice]:
        return self.iter_devices()

async def discover_devices(
        broadcast_address: str=WIZ_BROADCAST_ADDRESS,
        port: int=WIZ_DEVICE_PORT,
        wait_time: float=DEFAULT_DISCOVERY_WAIT_TIME,
        interval: float=DEFAULT_DISCOVERY_INTERVAL,
      ) -> List[DiscoveredDevice]:
    """Searches for wait_time seconds and returns every device that replied."""
    results: List[DiscoveredDevice] = []
    async with WizDiscoveryRequest(
            broadcast_address=broadcast_address,
            port=port,
            wait_time=wait_time,
            interval=interval,
          ) as request:
        async for device in request:
            results.append(device)
    logger.info(f"Discovery complete. Found {len(results)} device(s)")
    return results
