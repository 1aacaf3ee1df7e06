# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Constants used by this package"""

WIZ_DEVICE_PORT = 38899
"""The UDP port on which devices accept commands. Smart Dial events are also broadcast to this port."""

WIZ_PUSH_PORT = 38900
"""The UDP port on which this host listens for syncPilot/firstBeat messages pushed by devices."""

WIZ_BROADCAST_ADDRESS = "255.255.255.255"
"""The default broadcast address used for discovery."""

# Retry schedule for ordinary commands: sends at 0, 0.75, 2.25, 5.25, 8.25, 11.25 seconds
DEFAULT_MAX_ATTEMPTS = 6
DEFAULT_FIRST_INTERVAL = 0.75
DEFAULT_MAX_INTERVAL = 3.0
DEFAULT_TIMEOUT = 13.0

# Retry schedule for latency-sensitive writes: sends at 0, 0.75, 2.25 seconds
COMMIT_MAX_ATTEMPTS = 3
COMMIT_FIRST_INTERVAL = 0.75
COMMIT_MAX_INTERVAL = 3.0
COMMIT_TIMEOUT = 5.0

DEFAULT_REGISTRATION_INTERVAL = 20.0
"""The interval (in seconds) at which push registrations are renewed."""

DEFAULT_DEBOUNCE_WINDOW = 0.4
"""Minimum time (in seconds) between two accepted button events of the same kind from one dial."""

DEFAULT_DISCOVERY_WAIT_TIME = 5.0
"""The default amount of time (in seconds) to collect discovery responses."""

DEFAULT_DISCOVERY_INTERVAL = 1.0
"""The interval (in seconds) at which the discovery broadcast is repeated."""

MAX_DATAGRAM_SIZE = 4096

MAX_LOGGED_BYTES = 200
"""Datagrams quoted in log and exception messages are truncated to this many bytes."""

PUSH_TEST_MARKER = b"test"
"""Literal probe datagram sent by the vendor app to the push port. Ignored."""

ERROR_CODE_METHOD_NOT_FOUND = -32601

METHOD_GET_PILOT = "getPilot"
METHOD_SET_PILOT = "setPilot"
METHOD_SYNC_PILOT = "syncPilot"
METHOD_FIRST_BEAT = "firstBeat"
METHOD_REGISTRATION = "registration"
METHOD_SYNC_ACC_EVT = "syncAccEvt"
METHOD_GET_DEV_INFO = "getDevInfo"
METHOD_GET_SYSTEM_CONFIG = "getSystemConfig"
METHOD_GET_MODEL_CONFIG = "getModelConfig"

DIAL_FRAME_LENGTH = 13
