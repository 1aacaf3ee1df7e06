import base64

import pytest

from wizlight_protocol import (
    DialEventDebouncer,
    DialEventType,
    decode_dial_event,
    decode_message,
)
from tests.helpers import dial_frame, sync_acc_evt

DIAL_MAC = "9877d583fec5"


class TestDecode:
    def test_captured_frame(self):
        frame = base64.b64encode(bytes.fromhex("81 be 00 00 00 20 09 01 60 ab 25 c1 da")).decode()
        assert frame == "gb4AAAAgCQFgqyXB2g=="
        event = decode_dial_event(sync_acc_evt(DIAL_MAC, frame))
        assert event is not None
        assert event.event_type == DialEventType.ROTATE_CLOCKWISE
        assert event.sequence == 0x81BE
        assert event.raw_type == 0x09
        assert event.action == 0x01
        assert event.state == 0x60
        assert event.header == b"\x00\x00\x00\x20"
        assert event.reserved == b"\xab\x25\xc1\xda"
        assert event.frame == frame
        assert event.mac == DIAL_MAC

    @pytest.mark.parametrize(
        "raw_type, expected",
        [
            (0x01, DialEventType.DIAL_SHORT_PRESS),
            (0x02, DialEventType.DIAL_LONG_PRESS),
            (0x08, DialEventType.ROTATE_COUNTER_CLOCKWISE),
            (0x09, DialEventType.ROTATE_CLOCKWISE),
            (0x10, DialEventType.SCENE1_SHORT_PRESS),
            (0x11, DialEventType.SCENE2_SHORT_PRESS),
            (0x12, DialEventType.SCENE1_LONG_PRESS),
            (0x13, DialEventType.SCENE2_LONG_PRESS),
            (0x05, DialEventType.UNKNOWN),
            (0xFF, DialEventType.UNKNOWN),
        ],
    )
    def test_event_types(self, raw_type, expected):
        event = decode_dial_event(sync_acc_evt(DIAL_MAC, dial_frame(raw_type)))
        assert event is not None
        assert event.event_type == expected
        assert event.raw_type == raw_type

    def test_state_byte_kept_verbatim(self):
        event = decode_dial_event(sync_acc_evt(DIAL_MAC, dial_frame(0x01, state=0x5F)))
        assert event.state == 0x5F

    def test_from_decoded_message(self):
        message = decode_message(b'{"method":"syncAccEvt","params":{"mac":"9877d583fec5","frame":"gb4AAAAgCQFgqyXB2g=="}}')
        event = decode_dial_event(message)
        assert event is not None
        assert event.event_type == DialEventType.ROTATE_CLOCKWISE

    def test_wrong_method(self):
        data = sync_acc_evt(DIAL_MAC, dial_frame(0x09))
        data["method"] = "syncPilot"
        assert decode_dial_event(data) is None

    def test_missing_params(self):
        assert decode_dial_event({"method": "syncAccEvt"}) is None
        assert decode_dial_event({"method": "syncAccEvt", "params": {"mac": DIAL_MAC}}) is None
        assert decode_dial_event({"method": "syncAccEvt", "params": {"frame": dial_frame(0x09)}}) is None

    def test_wrong_length(self):
        short = base64.b64encode(b"\x00" * 12).decode()
        long = base64.b64encode(b"\x00" * 14).decode()
        assert decode_dial_event(sync_acc_evt(DIAL_MAC, short)) is None
        assert decode_dial_event(sync_acc_evt(DIAL_MAC, long)) is None

    def test_bad_base64(self):
        assert decode_dial_event(sync_acc_evt(DIAL_MAC, "not base64!")) is None

    def test_equality_ignores_receive_time(self):
        data = sync_acc_evt(DIAL_MAC, dial_frame(0x01, sequence=7))
        assert decode_dial_event(data, monotonic_time=1.0) == decode_dial_event(data, monotonic_time=2.0)


def _event(raw_type: int, at: float, mac: str = DIAL_MAC, sequence: int = 1):
    event = decode_dial_event(sync_acc_evt(mac, dial_frame(raw_type, sequence=sequence)), monotonic_time=at)
    assert event is not None
    return event


class TestDebouncer:
    def test_second_press_within_window_rejected(self):
        debouncer = DialEventDebouncer()
        assert debouncer.accept(_event(0x01, 10.0))
        assert not debouncer.accept(_event(0x01, 10.1, sequence=2))

    def test_press_after_window_accepted(self):
        debouncer = DialEventDebouncer()
        assert debouncer.accept(_event(0x01, 10.0))
        assert debouncer.accept(_event(0x01, 10.45, sequence=2))

    def test_rejected_press_does_not_extend_window(self):
        debouncer = DialEventDebouncer()
        assert debouncer.accept(_event(0x01, 10.0))
        assert not debouncer.accept(_event(0x01, 10.3))
        assert debouncer.accept(_event(0x01, 10.41))

    def test_rapid_rotations_all_accepted(self):
        debouncer = DialEventDebouncer()
        assert all(debouncer.accept(_event(0x09, 10.0 + i * 0.01, sequence=i)) for i in range(5))
        assert all(debouncer.accept(_event(0x08, 11.0 + i * 0.01, sequence=i)) for i in range(5))

    def test_keys_are_independent(self):
        debouncer = DialEventDebouncer()
        assert debouncer.accept(_event(0x01, 10.0))
        assert debouncer.accept(_event(0x10, 10.05))
        assert debouncer.accept(_event(0x01, 10.05, mac="9877d583fec6"))

    def test_unknown_events_are_debounced(self):
        debouncer = DialEventDebouncer()
        assert debouncer.accept(_event(0x05, 10.0))
        assert not debouncer.accept(_event(0x05, 10.2))

    def test_custom_window(self):
        debouncer = DialEventDebouncer(window=0.1)
        assert debouncer.accept(_event(0x02, 10.0))
        assert debouncer.accept(_event(0x02, 10.15))

    def test_reset(self):
        debouncer = DialEventDebouncer()
        assert debouncer.accept(_event(0x01, 10.0))
        debouncer.reset()
        assert debouncer.accept(_event(0x01, 10.1))
