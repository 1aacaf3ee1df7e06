#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Typed read access to a device "pilot" (state snapshot) as carried in getPilot results
and syncPilot pushes.
"""

from __future__ import annotations

from wizlight_protocol.internal_types import *

RHYTHM_SCENE_ID = 1000
"""Pseudo scene id reported when the device is running a schedule (rhythm)."""

class PilotState:
    """Wrapper for a pilot parameter/result object.

    All accessors return None if the corresponding field is absent or has the wrong type.
    """

    pilot_data: JsonableDict
    """The raw pilot object"""

    def __init__(self, pilot_data: Mapping[str, Jsonable]):
        self.pilot_data = dict(pilot_data)

    def __str__(self) -> str:
        return (f"PilotState(state={self.state}, brightness={self.brightness}, "
                f"color_temp={self.color_temp}, scene_id={self.scene_id}, rgb={self.rgb})")

    def __repr__(self) -> str:
        return str(self)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, PilotState):
            return False
        return self.pilot_data == other.pilot_data

    def _get_int(self, key: str) -> Optional[int]:
        value = self.pilot_data.get(key)
        if not isinstance(value, int) or isinstance(value, bool):
            return None
        return value

    def _get_str(self, key: str) -> Optional[str]:
        value = self.pilot_data.get(key)
        if value is None:
            return None
        return str(value)

    def _get_float_list(self, key: str) -> Optional[List[float]]:
        value = self.pilot_data.get(key)
        if not isinstance(value, list) or not all(isinstance(x, (int, float)) for x in value):
            return None
        return [float(x) for x in value]

    @property
    def state(self) -> Optional[bool]:
        """True if the light is on"""
        value = self.pilot_data.get("state")
        if not isinstance(value, bool):
            return None
        return value

    @property
    def mac(self) -> Optional[str]:
        return self._get_str("mac")

    @property
    def source(self) -> Optional[str]:
        """What caused the last state change (e.g., "udp", "wfa", "hb")"""
        return self._get_str("src")

    @property
    def dimming(self) -> Optional[int]:
        """Brightness in percent (10-100)"""
        return self._get_int("dimming")

    @property
    def brightness(self) -> Optional[int]:
        """Brightness scaled to 0-255"""
        dimming = self.dimming
        if dimming is None:
            return None
        return int(dimming * 255 / 100 + 0.5)

    @property
    def color_temp(self) -> Optional[int]:
        """Color temperature in kelvins"""
        return self._get_int("temp")

    @property
    def scene_id(self) -> Optional[int]:
        if "schdPsetId" in self.pilot_data:
            return RHYTHM_SCENE_ID
        return self._get_int("sceneId")

    @property
    def speed(self) -> Optional[int]:
        return self._get_int("speed")

    @property
    def ratio(self) -> Optional[int]:
        return self._get_int("ratio")

    @property
    def rssi(self) -> Optional[int]:
        return self._get_int("rssi")

    @property
    def warm_white(self) -> Optional[int]:
        return self._get_int("w")

    @property
    def cold_white(self) -> Optional[int]:
        return self._get_int("c")

    @property
    def power(self) -> Optional[float]:
        """Power consumption in watts, for devices with power monitoring"""
        milliwatts = self._get_int("pc")
        if milliwatts is None:
            return None
        return milliwatts / 1000.0

    @property
    def rgb(self) -> Optional[Tuple[int, int, int]]:
        r, g, b = self._get_int("r"), self._get_int("g"), self._get_int("b")
        if r is None or g is None or b is None:
            return None
        return (r, g, b)

    @property
    def rgbw(self) -> Optional[Tuple[int, int, int, int]]:
        rgb = self.rgb
        w = self.warm_white
        if rgb is None or w is None:
            return None
        return rgb + (w,)

    @property
    def rgbww(self) -> Optional[Tuple[int, int, int, int, int]]:
        rgb = self.rgb
        c, w = self.cold_white, self.warm_white
        if rgb is None or c is None or w is None:
            return None
        return rgb + (c, w)

    @property
    def white_range(self) -> Optional[List[float]]:
        return self._get_float_list("whiteRange")

    @property
    def extended_white_range(self) -> Optional[List[float]]:
        result = self._get_float_list("extRange")
        if result is None:
            # firmware >= 1.22 reports "cctRange" instead
            result = self._get_float_list("cctRange")
        return result

    @property
    def fan_state(self) -> Optional[int]:
        return self._get_int("fs")

    @property
    def fan_mode(self) -> Optional[int]:
        return self._get_int("fm")

    @property
    def fan_speed(self) -> Optional[int]:
        return self._get_int("fv")

    @property
    def fan_reverse(self) -> Optional[int]:
        return self._get_int("fr")

    @property
    def fan_speed_range(self) -> Optional[int]:
        return self._get_int("fanSpd")
