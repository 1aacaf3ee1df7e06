#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
WizPushManager -- receives unsolicited state pushes from WiZ devices.

A device only pushes its state (syncPilot) to a host that has registered with it, and
forgets the registration after a short time. The manager:

  1. Listens on the push port (38900)
  2. Sends a registration to each subscribed device when it is subscribed, then renews
     every registration at a fixed interval (20 seconds by default)
  3. Routes each inbound syncPilot to the callback subscribed for the sending device's MAC
  4. Reports every firstBeat (a device joining the network) to an optional discovery callback

The listener only exists while at least one device is subscribed. Removing the last
subscription tears it down and returns the manager to its initial state.
"""

from __future__ import annotations

import asyncio
import errno
from enum import Enum

from wizlight_protocol.internal_types import *
from .pkg_logging import logger
from .constants import (
    WIZ_DEVICE_PORT,
    WIZ_PUSH_PORT,
    DEFAULT_REGISTRATION_INTERVAL,
    PUSH_TEST_MARKER,
  )
from .exceptions import WizError
from .wiz_message import WizMessage, SyncPilotMessage, FirstBeatMessage, RegistrationMessage
from .wiz_socket import WizListenerSocket, WizSocketBinding, WizEventSource, WizSubscriber
from .retry_schedule import RetrySchedule, COMMIT_RETRY_SCHEDULE
from .transport import send
from .pilot import PilotState
from .util import select_source_ip, generate_phone_mac, normalize_mac

PushCallback = Callable[[PilotState, str], None]
"""Called as callback(state, sender_ip) for each syncPilot from a subscribed device."""

DiscoveryCallback = Callable[[str, Optional[str]], None]
"""Called as callback(sender_ip, mac) for each firstBeat."""

RegistrationSender = Callable[[bytes, str, int, RetrySchedule], Awaitable[Tuple[bytes, HostAndPort]]]
"""Called as sender(data, host, port, schedule) to perform one registration exchange. Has the
   same contract as transport.send(); a device supplies one that holds its command lock."""

class PushState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"

class PushRegistration:
    """The subscription and registration state for one device."""

    mac: str
    callback: PushCallback

    host: Optional[str]
    """The device's last known IP address; registrations are sent here. Refreshed by
       every syncPilot received from the device."""

    sender: Optional[RegistrationSender]
    """Performs registration exchanges with the device. None uses transport.send()."""

    last_registered: Optional[float] = None
    """The loop time of the last successfully acknowledged registration, if any."""

    def __init__(
            self,
            mac: str,
            callback: PushCallback,
            host: Optional[str]=None,
            sender: Optional[RegistrationSender]=None,
          ):
        self.mac = mac
        self.callback = callback
        self.host = host
        self.sender = sender

    def __str__(self) -> str:
        return f"PushRegistration(mac={self.mac}, host={self.host})"

    def __repr__(self) -> str:
        return str(self)

class PushUpdate:
    """A state push delivered to async subscribers."""

    mac: str
    sender_ip: str
    state: PilotState

    def __init__(self, mac: str, sender_ip: str, state: PilotState):
        self.mac = mac
        self.sender_ip = sender_ip
        self.state = state

    def __str__(self) -> str:
        return f"PushUpdate(mac={self.mac}, sender_ip={self.sender_ip}, state={self.state})"

    def __repr__(self) -> str:
        return str(self)

class _PushListenerSocket(WizListenerSocket):
    manager: WizPushManager

    def __init__(self, manager: WizPushManager, bind_address: str, port: int):
        super().__init__(bind_address=bind_address, port=port)
        self.manager = manager

    #@override
    def accept_datagram(self, socket_binding: WizSocketBinding, addr: HostAndPort, data: bytes) -> bool:
        # the mobile app probes the push port with this literal
        return data != PUSH_TEST_MARKER

    #@override
    def handle_message(self, socket_binding: WizSocketBinding, addr: HostAndPort, message: WizMessage) -> None:
        self.manager.handle_push(addr, message)

class WizPushManager:
    """Registers for and routes push notifications from WiZ devices.

    Construct one per push port and share it between devices.
    """

    listen_port: int
    """The push port to listen on. 0 picks an ephemeral port."""

    device_port: int
    """The device port that registrations are sent to."""

    bind_address: str

    source_ip: Optional[str]
    """If set, the address advertised to devices as phoneIp; otherwise chosen from the
       local interfaces when start() is called."""

    registration_interval: float
    registration_schedule: RetrySchedule

    phone_mac: str
    """The identifier presented to devices as our MAC. Random unless provided."""

    state: PushState = PushState.IDLE

    fail_reason: Optional[str] = None
    """Why the most recent start() failed, or None."""

    registration_message: Optional[RegistrationMessage] = None
    """The registration sent to devices while running."""

    updates: WizEventSource[PushUpdate]
    """Fan-out of routed state pushes to async subscribers."""

    _registrations: Dict[str, PushRegistration]
    _discovery_callback: Optional[DiscoveryCallback] = None
    _listener: Optional[_PushListenerSocket] = None
    _renewal_task: Optional[asyncio.Task[None]] = None
    _registration_tasks: Set[asyncio.Task[None]]
    _deferred_teardown_task: Optional[asyncio.Task[None]] = None
    _transition_lock: asyncio.Lock

    def __init__(
            self,
            listen_port: int=WIZ_PUSH_PORT,
            device_port: int=WIZ_DEVICE_PORT,
            bind_address: str='0.0.0.0',
            source_ip: Optional[str]=None,
            registration_interval: float=DEFAULT_REGISTRATION_INTERVAL,
            registration_schedule: RetrySchedule=COMMIT_RETRY_SCHEDULE,
            phone_mac: Optional[str]=None,
          ):
        self.listen_port = listen_port
        self.device_port = device_port
        self.bind_address = bind_address
        self.source_ip = source_ip
        self.registration_interval = registration_interval
        self.registration_schedule = registration_schedule
        self.phone_mac = generate_phone_mac() if phone_mac is None else phone_mac
        self.updates = WizEventSource()
        self._registrations = {}
        self._registration_tasks = set()
        self._transition_lock = asyncio.Lock()

    def __str__(self) -> str:
        return f"WizPushManager(state={self.state.name}, port={self.bound_port}, subscriptions={len(self._registrations)})"

    def __repr__(self) -> str:
        return str(self)

    @property
    def is_running(self) -> bool:
        return self.state == PushState.RUNNING

    @property
    def bound_port(self) -> Optional[int]:
        """The port actually bound while running, else None."""
        if self._listener is None:
            return None
        return self._listener.port

    @property
    def subscriptions(self) -> List[str]:
        """The MACs of all subscribed devices."""
        return list(self._registrations.keys())

    def get_registration(self, mac: str) -> Optional[PushRegistration]:
        return self._registrations.get(normalize_mac(mac))

    @property
    def diagnostics(self) -> JsonableDict:
        return {
            "running": self.is_running,
            "state": self.state.value,
            "fail_reason": self.fail_reason,
            "subscriptions": len(self._registrations),
            "port": self.bound_port,
            "phone_ip": None if self.registration_message is None else self.registration_message.phone_ip,
          }

    def set_discovery_callback(self, callback: Optional[DiscoveryCallback]) -> None:
        """Sets the callback invoked with (sender_ip, mac) for every firstBeat. None clears it."""
        self._discovery_callback = callback

    async def start(self, target_ip: str) -> bool:
        """Starts listening for pushes, if not already running.

        target_ip is the address of a device that will push to us; it selects the local
        address advertised in registrations.

        Returns True on success. On failure (no usable local address, or the push port is
        already in use) returns False and sets fail_reason.
        """
        async with self._transition_lock:
            if self.state == PushState.RUNNING:
                return True
            self.state = PushState.STARTING
            try:
                source_ip = self.source_ip
                if source_ip is None:
                    try:
                        source_ip = select_source_ip(target_ip)
                    except (OSError, ValueError) as e:
                        logger.warning(f"Could not enumerate local addresses: {e}")
                if source_ip is None:
                    self.fail_reason = f"Could not determine a local IP address that can reach {target_ip}"
                    logger.warning(f"{self.fail_reason}; push updates unavailable")
                    return False

                listener = _PushListenerSocket(self, self.bind_address, self.listen_port)
                try:
                    await listener.start()
                except OSError as e:
                    if e.errno == errno.EADDRINUSE:
                        self.fail_reason = f"Port {self.listen_port} is in use: {e}"
                    else:
                        self.fail_reason = f"Unable to listen on {self.bind_address}:{self.listen_port}: {e}"
                    logger.warning(f"{self.fail_reason}; push updates unavailable")
                    return False

                self._listener = listener
                self.registration_message = RegistrationMessage.create(source_ip, self.phone_mac)
                self.fail_reason = None
                self.state = PushState.RUNNING
                self._renewal_task = asyncio.create_task(self._renewal_loop())
                logger.info(f"WizPushManager listening on port {listener.port}, advertising {source_ip}")
                for registration in self._registrations.values():
                    self._schedule_registration(registration)
                return True
            finally:
                if self.state == PushState.STARTING:
                    self.state = PushState.IDLE

    def subscribe(
            self,
            mac: str,
            callback: PushCallback,
            host: Optional[str]=None,
            sender: Optional[RegistrationSender]=None,
          ) -> Callable[[], None]:
        """Routes state pushes from the device with this MAC to callback, replacing any previous
           subscription for the device. host is the device's address, used for registrations.
           sender, if provided, performs the registration exchanges so that they can be
           serialized with other commands to the device.

           If running, a registration is sent to the device immediately.

           Returns a function that removes this subscription; it does nothing once the
           subscription has been replaced. Removing the last subscription stops the listener.
        """
        key = normalize_mac(mac)
        previous = self._registrations.get(key)
        registration = PushRegistration(key, callback, host=host, sender=sender)
        if not previous is None:
            if host is None:
                registration.host = previous.host
            registration.last_registered = previous.last_registered
        self._registrations[key] = registration
        logger.debug(f"Subscribed to pushes from {registration}")
        if self.is_running:
            self._schedule_registration(registration)

        def unsubscribe() -> None:
            if self._registrations.get(key) is registration:
                self.unsubscribe(key)
        return unsubscribe

    def unsubscribe(self, mac: str) -> None:
        """Removes the subscription for a device. Removing the last subscription stops the listener."""
        key = normalize_mac(mac)
        if self._registrations.pop(key, None) is None:
            return
        logger.debug(f"Unsubscribed from pushes from {key}")
        if len(self._registrations) == 0:
            self._stop_if_no_subscriptions()

    def subscribe_updates(self) -> WizSubscriber[PushUpdate]:
        """Returns an async context manager/iterator over routed state pushes from all subscribed devices.
           The iteration ends when the listener is torn down."""
        return self.updates.subscribe()

    async def stop(self) -> None:
        """Removes all subscriptions and stops the listener."""
        async with self._transition_lock:
            self._registrations.clear()
            self._teardown()

    def _stop_if_no_subscriptions(self) -> None:
        if self._transition_lock.locked():
            # a start() is in progress; tear down once it finishes
            if self._deferred_teardown_task is None:
                self._deferred_teardown_task = asyncio.get_running_loop().create_task(self._deferred_teardown())
        elif self.state != PushState.IDLE:
            self._teardown()

    async def _deferred_teardown(self) -> None:
        try:
            async with self._transition_lock:
                if len(self._registrations) == 0 and self.state != PushState.IDLE:
                    self._teardown()
        finally:
            self._deferred_teardown_task = None

    def _teardown(self) -> None:
        if not self._renewal_task is None:
            self._renewal_task.cancel()
            self._renewal_task = None
        for task in list(self._registration_tasks):
            task.cancel()
        self._registration_tasks.clear()
        if not self._listener is None:
            logger.info("Stopping WizPushManager")
            self._listener.close()
            self._listener = None
        self.updates.end_subscribers()
        self._discovery_callback = None
        self.registration_message = None
        self.state = PushState.IDLE

    def _schedule_registration(self, registration: PushRegistration) -> None:
        if registration.host is None:
            logger.debug(f"No known address for {registration.mac}; waiting for a push before registering")
            return
        task = asyncio.get_running_loop().create_task(self.register_device(registration))
        self._registration_tasks.add(task)
        task.add_done_callback(self._registration_tasks.discard)

    async def register_device(self, registration: PushRegistration) -> bool:
        """Sends one registration to a device. Returns True if the device acknowledged it.
           Failures are logged, never raised."""
        message = self.registration_message
        host = registration.host
        if message is None or host is None:
            return False
        sender: RegistrationSender = send if registration.sender is None else registration.sender
        try:
            await sender(message.raw_data, host, self.device_port, self.registration_schedule)
        except WizError as e:
            logger.warning(f"Registration with {registration.mac} at {host} failed: {e}")
            return False
        registration.last_registered = asyncio.get_running_loop().time()
        logger.debug(f"Registered with {registration}")
        return True

    async def _renewal_loop(self) -> None:
        while True:
            await asyncio.sleep(self.registration_interval)
            for registration in list(self._registrations.values()):
                self._schedule_registration(registration)

    def handle_push(self, addr: HostAndPort, message: WizMessage) -> None:
        """Routes one decoded datagram received on the push port."""
        sender_ip = addr[0]
        if isinstance(message, FirstBeatMessage):
            logger.info(f"firstBeat from {sender_ip} with MAC {message.mac}")
            callback = self._discovery_callback
            if not callback is None:
                try:
                    callback(sender_ip, message.mac)
                except Exception as e:
                    logger.warning(f"Discovery callback raised exception: {e}")
        elif isinstance(message, SyncPilotMessage):
            registration = self._registrations.get(normalize_mac(message.mac))
            if registration is None:
                logger.debug(f"Ignoring syncPilot from unsubscribed device {message.mac} at {sender_ip}")
                return
            registration.host = sender_ip
            state = PilotState(message.params)
            try:
                registration.callback(state, sender_ip)
            except Exception as e:
                logger.warning(f"Push callback for {registration.mac} raised exception: {e}")
            self.updates.publish(PushUpdate(registration.mac, sender_ip, state))
        else:
            logger.debug(f"Ignoring {message} from {addr} on push port")
