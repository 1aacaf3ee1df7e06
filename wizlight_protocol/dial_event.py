#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Decoding of WiZ Smart Dial accessory events, and the debounce filter applied to them.

A dial reports each physical action as a syncAccEvt message carrying a base64 encoded
13-byte frame:

    offset  size  field
    0       2     sequence number (big-endian)
    2       4     header (00 00 00 20 observed)
    6       1     event type
    7       1     action (01 observed)
    8       1     state (60 or 5f observed)
    9       4     reserved

Only the sequence number and event type are interpreted; the other fields are kept
verbatim in the DialEvent.
"""

from __future__ import annotations

import base64
import binascii
import datetime
import time
from enum import Enum

from wizlight_protocol.internal_types import *
from .pkg_logging import logger
from .constants import DIAL_FRAME_LENGTH, DEFAULT_DEBOUNCE_WINDOW, METHOD_SYNC_ACC_EVT
from .wiz_message import WizMessage

class DialEventType(Enum):
    DIAL_SHORT_PRESS = 0x01
    DIAL_LONG_PRESS = 0x02
    ROTATE_COUNTER_CLOCKWISE = 0x08
    ROTATE_CLOCKWISE = 0x09
    SCENE1_SHORT_PRESS = 0x10
    SCENE2_SHORT_PRESS = 0x11
    SCENE1_LONG_PRESS = 0x12
    SCENE2_LONG_PRESS = 0x13
    UNKNOWN = -1

    @classmethod
    def from_raw_type(cls, raw_type: int) -> DialEventType:
        """Maps the frame's event type byte to a DialEventType. Unmapped values give UNKNOWN."""
        if raw_type < 0:
            return cls.UNKNOWN
        try:
            return cls(raw_type)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_rotation(self) -> bool:
        """True for the continuous (rotation) events, which are never debounced."""
        return self in (DialEventType.ROTATE_CLOCKWISE, DialEventType.ROTATE_COUNTER_CLOCKWISE)

class DialEvent:
    """A single decoded Smart Dial event."""

    mac: str
    """The MAC address of the dial that generated the event"""

    event_type: DialEventType

    sequence: int
    """The frame sequence number; increments with each event"""

    raw_type: int
    """The event type byte as received"""

    action: int
    state: int
    header: bytes
    reserved: bytes

    frame: str
    """The base64 frame exactly as received"""

    monotonic_time: float
    """The time the event was received, as returned by time.monotonic()."""

    utc_time: datetime.datetime
    """The UTC wall-clock time the event was received."""

    def __init__(
            self,
            mac: str,
            event_type: DialEventType,
            sequence: int,
            raw_type: int,
            action: int,
            state: int,
            header: bytes,
            reserved: bytes,
            frame: str,
            monotonic_time: Optional[float]=None,
            utc_time: Optional[datetime.datetime]=None,
          ):
        self.mac = mac
        self.event_type = event_type
        self.sequence = sequence
        self.raw_type = raw_type
        self.action = action
        self.state = state
        self.header = header
        self.reserved = reserved
        self.frame = frame
        self.monotonic_time = time.monotonic() if monotonic_time is None else monotonic_time
        self.utc_time = datetime.datetime.now(datetime.timezone.utc) if utc_time is None else utc_time

    def __str__(self) -> str:
        return (f"DialEvent(mac={self.mac}, type={self.event_type.name}, seq={self.sequence}, "
                f"raw_type=0x{self.raw_type:02x})")

    def __repr__(self) -> str:
        return str(self)

    def __eq__(self, other: Any) -> bool:
        # receive times are not compared
        if not isinstance(other, DialEvent):
            return False
        return (self.mac == other.mac and
                self.event_type == other.event_type and
                self.sequence == other.sequence and
                self.raw_type == other.raw_type and
                self.action == other.action and
                self.state == other.state and
                self.frame == other.frame)

    def __hash__(self) -> int:
        return hash((self.mac, self.event_type, self.sequence, self.raw_type, self.action, self.state, self.frame))

def decode_dial_frame(mac: str, frame: str, monotonic_time: Optional[float]=None) -> Optional[DialEvent]:
    """Decodes a base64 encoded dial frame. Returns None if it is not valid base64 or
       is not exactly 13 bytes long."""
    try:
        frame_bytes = base64.b64decode(frame, validate=True)
    except (binascii.Error, ValueError):
        logger.debug(f"Dial frame from {mac} is not valid base64: {frame!r}")
        return None
    if len(frame_bytes) != DIAL_FRAME_LENGTH:
        logger.debug(f"Dial frame from {mac} has length {len(frame_bytes)}, expected {DIAL_FRAME_LENGTH}")
        return None
    raw_type = frame_bytes[6]
    return DialEvent(
        mac=mac,
        event_type=DialEventType.from_raw_type(raw_type),
        sequence=int.from_bytes(frame_bytes[0:2], 'big'),
        raw_type=raw_type,
        action=frame_bytes[7],
        state=frame_bytes[8],
        header=frame_bytes[2:6],
        reserved=frame_bytes[9:13],
        frame=frame,
        monotonic_time=monotonic_time,
      )

def decode_dial_event(envelope: Union[WizMessage, Mapping[str, Any]], monotonic_time: Optional[float]=None) -> Optional[DialEvent]:
    """Decodes a syncAccEvt message, given as a WizMessage or as the decoded JSON object.

    Returns None (never raises) if the message is not a syncAccEvt, lacks params.mac or
    params.frame, or the frame is not a valid 13-byte dial frame.
    """
    json_data = envelope.json_data if isinstance(envelope, WizMessage) else envelope
    if not isinstance(json_data, Mapping) or json_data.get("method") != METHOD_SYNC_ACC_EVT:
        return None
    params = json_data.get("params")
    if not isinstance(params, Mapping):
        return None
    mac = params.get("mac")
    frame = params.get("frame")
    if not isinstance(mac, str) or not isinstance(frame, str):
        return None
    return decode_dial_frame(mac, frame, monotonic_time=monotonic_time)

class DialEventDebouncer:
    """Suppresses repeated discrete dial events (button presses).

    For each (mac, event_type), a discrete event is rejected if it arrives less than
    window seconds after the last accepted one. Rotation events are always accepted.
    Entries are created on first use and are never evicted.
    """

    window: float
    """The debounce window, in seconds"""

    _last_accepted: Dict[Tuple[str, DialEventType], float]

    def __init__(self, window: float=DEFAULT_DEBOUNCE_WINDOW):
        self.window = window
        self._last_accepted = {}

    def accept(self, event: DialEvent, now: Optional[float]=None) -> bool:
        """Returns True if the event should be delivered. now defaults to event.monotonic_time."""
        if event.event_type.is_rotation:
            return True
        if now is None:
            now = event.monotonic_time
        key = (event.mac, event.event_type)
        last_time = self._last_accepted.get(key)
        if not last_time is None:
            elapsed = now - last_time
            if elapsed < self.window:
                logger.debug(f"Debouncing {event} ({elapsed:.3f}s since last accepted)")
                return False
        self._last_accepted[key] = now
        return True

    def reset(self) -> None:
        self._last_accepted.clear()
