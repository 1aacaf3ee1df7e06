#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Abstraction of a UDP/JSON datagram used in the WiZ protocol.

Every datagram is a single UTF-8 JSON object. Requests carry "method" and an optional
"params" object; replies carry "result" or "error". Inbound datagrams are decoded once,
at the socket boundary, by decode_message() into one of the WizMessage variants below,
so that the rest of the package never looks up raw JSON fields.
"""

from __future__ import annotations

from wizlight_protocol.internal_types import *
from .pkg_logging import logger
from .exceptions import WizProtocolError
from .constants import (
    ERROR_CODE_METHOD_NOT_FOUND,
    METHOD_SET_PILOT,
    METHOD_SYNC_PILOT,
    METHOD_FIRST_BEAT,
    METHOD_REGISTRATION,
    METHOD_SYNC_ACC_EVT,
    MAX_LOGGED_BYTES,
)

import json

class WizMessage:
    """Wrapper for a raw WiZ datagram.

    Can be created either from a method name and params (for sending), or from the
    raw bytes of a received datagram. In the latter case, use decode_message() to
    get the appropriate subclass.
    """

    _raw_data: bytes
    """The raw UDP datagram contents"""

    _json_data: JsonableDict
    """The decoded top-level JSON object"""

    def __init__(
            self,
            method: Optional[str]=None,
            params: Optional[Mapping[str, Jsonable]]=None,
            raw_data: Optional[bytes]=None,
            json_data: Optional[Mapping[str, Jsonable]]=None,
            include_empty_params: bool=False,
          ):
        if raw_data is None:
            if json_data is None:
                if method is None:
                    raise ValueError("Either method, json_data or raw_data must be provided")
                json_data = { "method": method }
                if (params is not None and len(params) > 0) or include_empty_params:
                    json_data["params"] = dict(params or {})
            elif not (method is None and params is None):
                raise ValueError("If json_data is provided, method and params must be None")
            self._json_data = dict(json_data)
            self._raw_data = json.dumps(self._json_data, separators=(',', ':')).encode('utf-8')
        else:
            assert isinstance(raw_data, bytes)
            if not (method is None and params is None and json_data is None):
                raise ValueError("If raw_data is provided, method, params, and json_data must be None")
            self._raw_data = raw_data
            self._json_data = parse_json_object(raw_data)
        self.validate()

    def validate(self) -> None:
        """Checks the fields required by this message variant. Raises WizProtocolError if
           they are missing or malformed. Subclasses override."""
        pass

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self._raw_data.decode('utf-8', errors='replace')})"

    def __repr__(self) -> str:
        return str(self)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, WizMessage):
            return False
        return self._json_data == other._json_data

    @property
    def raw_data(self) -> bytes:
        """The raw UDP datagram contents"""
        return self._raw_data

    @property
    def json_data(self) -> JsonableDict:
        """The decoded top-level JSON object"""
        return self._json_data

    @property
    def method(self) -> Optional[str]:
        """The "method" field, or None if not present. Replies usually echo the request method."""
        result = self._json_data.get("method")
        if not isinstance(result, str):
            return None
        return result

    @property
    def params(self) -> JsonableDict:
        """The "params" object. Returns an empty dict if absent or not an object."""
        result = self._json_data.get("params")
        if not isinstance(result, dict):
            return {}
        return result

    @property
    def mac(self) -> Optional[str]:
        """The "mac" field of params or result, if present."""
        for section in (self.params, self._json_data.get("result")):
            if isinstance(section, dict):
                mac = section.get("mac")
                if isinstance(mac, str):
                    return mac
        return None

    @property
    def is_error(self) -> bool:
        return False

class WizResultMessage(WizMessage):
    """A successful reply: {"method": ..., "result": {...}}"""

    def validate(self) -> None:
        if not isinstance(self._json_data.get("result"), dict):
            raise WizProtocolError(f"Reply has no result object: {self._json_data}")

    @property
    def result(self) -> JsonableDict:
        result = self._json_data["result"]
        assert isinstance(result, dict)
        return result

class WizErrorMessage(WizMessage):
    """A failure reply: {"error": {"code": <int>, "message": <str>}}"""

    def validate(self) -> None:
        if not isinstance(self._json_data.get("error"), dict):
            raise WizProtocolError(f"Reply has no error object: {self._json_data}")

    @property
    def is_error(self) -> bool:
        return True

    @property
    def error(self) -> JsonableDict:
        result = self._json_data["error"]
        assert isinstance(result, dict)
        return result

    @property
    def code(self) -> Optional[int]:
        result = self.error.get("code")
        if not isinstance(result, int) or isinstance(result, bool):
            return None
        return result

    @property
    def message(self) -> str:
        result = self.error.get("message")
        if not isinstance(result, str):
            return ""
        return result

    @property
    def is_method_not_found(self) -> bool:
        """True if the device reports that it does not implement the requested method."""
        return self.code == ERROR_CODE_METHOD_NOT_FOUND

class SetPilotMessage(WizMessage):
    """A request to change device state: {"method": "setPilot", "params": {...}}"""
    pass

class SyncPilotMessage(WizMessage):
    """A state push from a device: {"method": "syncPilot", "params": {..., "mac": <id>}}"""

    def validate(self) -> None:
        if not isinstance(self._json_data.get("params"), dict):
            raise WizProtocolError(f"syncPilot message has no params object: {self._json_data}")
        if not isinstance(self.params.get("mac"), str):
            raise WizProtocolError(f"syncPilot message has no mac: {self._json_data}")

    @property
    def mac(self) -> str:
        result = self.params["mac"]
        assert isinstance(result, str)
        return result

class FirstBeatMessage(WizMessage):
    """A discovery beacon sent by a device as it joins the network: {"method": "firstBeat", "params": {"mac": <id>}}"""
    pass

class RegistrationMessage(WizMessage):
    """A request asking a device to start (or stop) pushing state changes to a local address."""

    @classmethod
    def create(cls, phone_ip: str, phone_mac: str, register: bool=True, extra_params: Optional[Mapping[str, Jsonable]]=None) -> RegistrationMessage:
        params: JsonableDict = {
            "phoneIp": phone_ip,
            "register": register,
            "phoneMac": phone_mac,
          }
        if extra_params is not None:
            params.update(extra_params)
        return cls(method=METHOD_REGISTRATION, params=params)

    @property
    def phone_ip(self) -> Optional[str]:
        result = self.params.get("phoneIp")
        return result if isinstance(result, str) else None

    @property
    def phone_mac(self) -> Optional[str]:
        result = self.params.get("phoneMac")
        return result if isinstance(result, str) else None

    @property
    def register(self) -> bool:
        return self.params.get("register") is True

class SyncAccEvtMessage(WizMessage):
    """An accessory (Smart Dial) event: {"method": "syncAccEvt", "params": {"mac": <id>, "frame": <base64>}}"""

    def validate(self) -> None:
        params = self._json_data.get("params")
        if not isinstance(params, dict):
            raise WizProtocolError(f"syncAccEvt message has no params object: {self._json_data}")
        if not isinstance(params.get("mac"), str):
            raise WizProtocolError(f"syncAccEvt message has no mac: {self._json_data}")
        if not isinstance(params.get("frame"), str):
            raise WizProtocolError(f"syncAccEvt message has no frame: {self._json_data}")

    @property
    def mac(self) -> str:
        result = self.params["mac"]
        assert isinstance(result, str)
        return result

    @property
    def frame(self) -> str:
        """The base64 encoded binary frame"""
        result = self.params["frame"]
        assert isinstance(result, str)
        return result

_method_variants: Dict[str, type[WizMessage]] = {
    METHOD_SET_PILOT: SetPilotMessage,
    METHOD_SYNC_PILOT: SyncPilotMessage,
    METHOD_FIRST_BEAT: FirstBeatMessage,
    METHOD_REGISTRATION: RegistrationMessage,
    METHOD_SYNC_ACC_EVT: SyncAccEvtMessage,
}

def parse_json_object(raw_data: bytes) -> JsonableDict:
    """Decodes a datagram as a UTF-8 JSON object. Raises WizProtocolError if it is not one."""
    try:
        data = json.loads(raw_data.decode('utf-8'))
    except (ValueError, RecursionError) as e:
        # ValueError covers UnicodeDecodeError and JSONDecodeError; RecursionError is raised for deep nesting
        raise WizProtocolError(f"Datagram is not valid JSON ({type(e).__name__}): {raw_data[:MAX_LOGGED_BYTES]!r}") from e
    if not isinstance(data, dict):
        raise WizProtocolError(f"Datagram is not a JSON object: {raw_data[:MAX_LOGGED_BYTES]!r}")
    return data

def variant_for_json(json_data: Mapping[str, Jsonable]) -> type[WizMessage]:
    """Selects the WizMessage subclass that applies to a decoded JSON object."""
    if "error" in json_data:
        return WizErrorMessage
    if "result" in json_data:
        return WizResultMessage
    method = json_data.get("method")
    if isinstance(method, str):
        return _method_variants.get(method, WizMessage)
    return WizMessage

def decode_message(raw_data: bytes) -> WizMessage:
    """Decodes a received datagram into the WizMessage variant for its method.

    Raises WizProtocolError if the datagram is not a JSON object, or if the fields
    required by its variant are missing."""
    json_data = parse_json_object(raw_data)
    cls = variant_for_json(json_data)
    result = cls.__new__(cls)
    result._raw_data = raw_data
    result._json_data = json_data
    result.validate()
    logger.debug(f"Decoded {result}")
    return result

def message_from_json(json_data: Mapping[str, Jsonable]) -> WizMessage:
    """Like decode_message(), but for an already decoded JSON object."""
    cls = variant_for_json(json_data)
    return cls(json_data=json_data)
