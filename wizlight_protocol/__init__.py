# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Package wizlight_protocol implements the client side of the WiZ smart lighting UDP/JSON protocol.

WiZ lights accept one JSON command per UDP datagram on port 38899 and answer with a
single datagram. Delivery is not guaranteed, so each command is retransmitted with a
progressive backoff until a reply arrives or a deadline passes (see send()).

Devices can also push their state to a host that has registered with them: syncPilot
messages arrive on port 38900, as do firstBeat announcements from devices joining the
network (see WizPushManager). WiZ Smart Dial accessories broadcast button and rotation
events to port 38899 as syncAccEvt messages carrying a small binary frame (see
WizDialListener and decode_dial_event()).
"""

from .version import __version__

from .internal_types import Jsonable, JsonableDict, HostAndPort

from .exceptions import (
    WizError,
    WizConnectionError,
    WizTimeoutError,
    WizProtocolError,
    WizResponseError,
    WizMethodNotFound,
  )

from .wiz_message import (
    WizMessage,
    WizResultMessage,
    WizErrorMessage,
    SetPilotMessage,
    SyncPilotMessage,
    FirstBeatMessage,
    RegistrationMessage,
    SyncAccEvtMessage,
    decode_message,
    message_from_json,
  )
from .pilot import PilotState
from .retry_schedule import RetrySchedule, DEFAULT_RETRY_SCHEDULE, COMMIT_RETRY_SCHEDULE
from .transport import WizExchange, send
from .wiz_socket import WizSocket, WizSocketBinding, WizListenerSocket, WizSubscriber, WizEventSource
from .dial_event import DialEventType, DialEvent, DialEventDebouncer, decode_dial_event
from .dial_listener import WizDialListener, WizDial
from .push_manager import WizPushManager, PushState, PushRegistration, PushUpdate
from .discovery import WizDiscoveryRequest, DiscoveredDevice, discover_devices
from .device import WizDevice
from .config import WizConfig, ConfigContext
from .constants import WIZ_DEVICE_PORT, WIZ_PUSH_PORT, WIZ_BROADCAST_ADDRESS

__all__ = [
    '__version__',
    'Jsonable', 'JsonableDict', 'HostAndPort',
    'WizError', 'WizConnectionError', 'WizTimeoutError', 'WizProtocolError', 'WizResponseError', 'WizMethodNotFound',
    'WizMessage', 'WizResultMessage', 'WizErrorMessage', 'SetPilotMessage', 'SyncPilotMessage',
    'FirstBeatMessage', 'RegistrationMessage', 'SyncAccEvtMessage', 'decode_message', 'message_from_json',
    'PilotState',
    'RetrySchedule', 'DEFAULT_RETRY_SCHEDULE', 'COMMIT_RETRY_SCHEDULE',
    'WizExchange', 'send',
    'WizSocket', 'WizSocketBinding', 'WizListenerSocket', 'WizSubscriber', 'WizEventSource',
    'DialEventType', 'DialEvent', 'DialEventDebouncer', 'decode_dial_event',
    'WizDialListener', 'WizDial',
    'WizPushManager', 'PushState', 'PushRegistration', 'PushUpdate',
    'WizDiscoveryRequest', 'DiscoveredDevice', 'discover_devices',
    'WizDevice',
    'WizConfig', 'ConfigContext',
    'WIZ_DEVICE_PORT', 'WIZ_PUSH_PORT', 'WIZ_BROADCAST_ADDRESS',
]
