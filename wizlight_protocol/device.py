#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
WizDevice -- a thin facade over a single WiZ device.

Commands to one device are serialized with a lock, so that at most one exchange is
outstanding to it at a time. Exchanges with different devices proceed independently.
"""

from __future__ import annotations

import asyncio

from wizlight_protocol.internal_types import *
from .pkg_logging import logger
from .constants import (
    WIZ_DEVICE_PORT,
    METHOD_GET_PILOT,
    METHOD_SET_PILOT,
    METHOD_GET_SYSTEM_CONFIG,
    METHOD_GET_DEV_INFO,
    METHOD_GET_MODEL_CONFIG,
  )
from .exceptions import WizError, WizProtocolError, WizResponseError, WizMethodNotFound
from .wiz_message import WizMessage, WizResultMessage, WizErrorMessage, decode_message
from .retry_schedule import RetrySchedule, DEFAULT_RETRY_SCHEDULE, COMMIT_RETRY_SCHEDULE
from .transport import send
from .pilot import PilotState
from .push_manager import WizPushManager, PushCallback

class WizDevice:
    host: str
    port: int

    schedule: RetrySchedule
    """Used for queries and ordinary commands."""

    commit_schedule: RetrySchedule
    """Used for commands sent with commit=True (state changes)."""

    push_manager: Optional[WizPushManager]

    state: Optional[PilotState] = None
    """The most recently known state, from get_pilot() or a push."""

    mac: Optional[str] = None

    _lock: asyncio.Lock
    _push_callback: Optional[PushCallback] = None
    _push_unsubscribe: Optional[Callable[[], None]] = None

    def __init__(
            self,
            host: str,
            port: int=WIZ_DEVICE_PORT,
            push_manager: Optional[WizPushManager]=None,
            schedule: RetrySchedule=DEFAULT_RETRY_SCHEDULE,
            commit_schedule: RetrySchedule=COMMIT_RETRY_SCHEDULE,
            mac: Optional[str]=None,
          ):
        self.host = host
        self.port = port
        self.push_manager = push_manager
        self.schedule = schedule
        self.commit_schedule = commit_schedule
        self.mac = mac
        self._lock = asyncio.Lock()

    def __str__(self) -> str:
        return f"WizDevice(host={self.host}, port={self.port}, mac={self.mac})"

    def __repr__(self) -> str:
        return str(self)

    async def _send_locked(
            self,
            data: bytes,
            host: str,
            port: int,
            schedule: RetrySchedule,
          ) -> Tuple[bytes, HostAndPort]:
        # at most one exchange is outstanding to this device, including push registrations
        async with self._lock:
            return await send(data, host, port=port, schedule=schedule)

    async def send_message(self, message: WizMessage, commit: bool=False) -> WizMessage:
        """Sends a request and returns the decoded reply, whatever it is."""
        schedule = self.commit_schedule if commit else self.schedule
        data, addr = await self._send_locked(message.raw_data, self.host, self.port, schedule)
        return decode_message(data)

    async def send_command(
            self,
            method: str,
            params: Optional[Mapping[str, Jsonable]]=None,
            commit: bool=False,
          ) -> JsonableDict:
        """Sends a command and returns the "result" object of the reply.

        Raises:
            WizTimeoutError, WizConnectionError:  The exchange failed.
            WizMethodNotFound:                    The device does not implement the method.
            WizResponseError:                     The device reported any other error.
            WizProtocolError:                     The reply was not a valid result or error.
        """
        message = WizMessage(method=method, params=params, include_empty_params=True)
        logger.debug(f"{self}: request {message}")
        reply = await self.send_message(message, commit=commit)
        if isinstance(reply, WizErrorMessage):
            if reply.is_method_not_found:
                raise WizMethodNotFound(f"{method} is not supported by {self.host}: {reply.message}", code=reply.code)
            raise WizResponseError(f"{method} failed on {self.host}: {reply.message}", code=reply.code)
        if not isinstance(reply, WizResultMessage):
            raise WizProtocolError(f"Unexpected reply to {method} from {self.host}: {reply}")
        return reply.result

    async def get_pilot(self) -> PilotState:
        """Queries and caches the current state."""
        result = await self.send_command(METHOD_GET_PILOT)
        self.state = PilotState(result)
        return self.state

    async def set_pilot(self, params: Mapping[str, Jsonable]) -> JsonableDict:
        """Changes the device state, e.g. set_pilot({"state": True, "dimming": 50})."""
        return await self.send_command(METHOD_SET_PILOT, params, commit=True)

    async def get_system_config(self) -> JsonableDict:
        return await self.send_command(METHOD_GET_SYSTEM_CONFIG)

    async def get_device_info(self) -> JsonableDict:
        return await self.send_command(METHOD_GET_DEV_INFO)

    async def get_model_config(self) -> JsonableDict:
        """Only available on newer firmware; raises WizMethodNotFound otherwise."""
        return await self.send_command(METHOD_GET_MODEL_CONFIG)

    async def get_mac(self) -> str:
        """Returns the device MAC, querying the system config the first time."""
        if self.mac is None:
            config = await self.get_system_config()
            mac = config.get("mac")
            if not isinstance(mac, str):
                raise WizProtocolError(f"getSystemConfig reply from {self.host} has no mac: {config}")
            self.mac = mac
        return self.mac

    async def start_push(self, callback: Optional[PushCallback]=None) -> bool:
        """Subscribes to state pushes from this device through the push manager, starting it if needed.

        Returns False if the push manager could not be started; see push_manager.fail_reason.
        """
        if self.push_manager is None:
            raise WizError(f"{self}: no push manager was provided")
        mac = await self.get_mac()
        logger.info(f"Enabling push updates for {mac} at {self.host}")
        self._push_callback = callback
        self._push_unsubscribe = self.push_manager.subscribe(
            mac, self._on_push, host=self.host, sender=self._send_locked)
        if not await self.push_manager.start(self.host):
            logger.warning(f"{self}: push updates unavailable: {self.push_manager.fail_reason}")
            await self.stop_push()
            return False
        return True

    async def stop_push(self) -> None:
        if not self._push_unsubscribe is None:
            self._push_unsubscribe()
            self._push_unsubscribe = None
        self._push_callback = None

    def _on_push(self, state: PilotState, sender_ip: str) -> None:
        logger.debug(f"{self}: push from {sender_ip}: {state}")
        self.state = state
        if not self._push_callback is None:
            self._push_callback(state, sender_ip)
