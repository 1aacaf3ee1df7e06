#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Configuration for the command line tool and for applications that want file-based settings.

A configuration file is a JSON object; every key is optional:

    {
      "device_port": 38899,
      "push_port": 38900,
      "dial_port": 38899,
      "source_ip": "${env:WIZ_SOURCE_IP}",
      "broadcast_address": "192.168.1.255",
      "registration_interval": 20.0,
      "debounce_window": 0.4,
      "discovery_wait_time": 5.0,
      "discovery_interval": 1.0,
      "retry": { "max_attempts": 6, "first_interval": 0.75, "max_interval": 3.0, "timeout": 13.0 },
      "commit_retry": { "max_attempts": 3, "timeout": 5.0 }
    }

String values are rendered as templates before use; "${env:NAME}" expands to the
environment variable NAME, and "$$" to a literal "$".
"""

from __future__ import annotations

import os
import json
from collections import UserDict
from string import Template

from wizlight_protocol.internal_types import *
from .constants import (
    WIZ_DEVICE_PORT,
    WIZ_PUSH_PORT,
    WIZ_BROADCAST_ADDRESS,
    DEFAULT_REGISTRATION_INTERVAL,
    DEFAULT_DEBOUNCE_WINDOW,
    DEFAULT_DISCOVERY_WAIT_TIME,
    DEFAULT_DISCOVERY_INTERVAL,
  )
from .retry_schedule import RetrySchedule, DEFAULT_RETRY_SCHEDULE, COMMIT_RETRY_SCHEDULE

class _ConfigTemplate(Template):
    # allow a "namespace:" prefix, as in ${env:HOME}
    braceidpattern = r'(?a:[_a-z][_a-z0-9]*(?::[_a-z][_a-z0-9]*)?)'

class ConfigContext(UserDict):
    """Variables available to configuration templates. Every environment variable NAME
       is available as "env:NAME"."""

    def __init__(self, globals: Optional[Mapping[str, Any]]=None, os_environ: Optional[Mapping[str, str]]=None):
        super().__init__()
        if not globals is None:
            self.update(globals)
        if os_environ is None:
            os_environ = dict(os.environ)
        for k, v in os_environ.items():
            self[f"env:{k}"] = v

    def render_template_str(self, template_str: str) -> str:
        t = _ConfigTemplate(template_str)
        try:
            result: str = t.substitute(self)
        except KeyError as e:
            raise ValueError(f"Configuration references undefined variable {e} in {template_str!r}") from e
        return result

    def render_template_json_data(self, template_json_data: Jsonable) -> Jsonable:
        """Renders every string (not key) within a JSON value."""
        if isinstance(template_json_data, str):
            return self.render_template_str(template_json_data)
        if isinstance(template_json_data, dict):
            return { k: self.render_template_json_data(v) for k, v in template_json_data.items() }
        if isinstance(template_json_data, list):
            return [ self.render_template_json_data(v) for v in template_json_data ]
        return template_json_data

def _get_int(data: Mapping[str, Jsonable], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, str):
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"WizConfig: Expected {key} to be an int, got {value!r}")
    return value

def _get_float(data: Mapping[str, Jsonable], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, str):
        value = float(value)
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"WizConfig: Expected {key} to be a number, got {value!r}")
    return float(value)

def _get_optional_str(data: Mapping[str, Jsonable], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"WizConfig: Expected {key} to be a string, got {value!r}")
    return value

class WizConfig:
    device_port: int = WIZ_DEVICE_PORT
    push_port: int = WIZ_PUSH_PORT
    dial_port: int = WIZ_DEVICE_PORT

    source_ip: Optional[str] = None
    """The local address advertised in push registrations. None selects one automatically."""

    broadcast_address: str = WIZ_BROADCAST_ADDRESS
    registration_interval: float = DEFAULT_REGISTRATION_INTERVAL
    debounce_window: float = DEFAULT_DEBOUNCE_WINDOW
    discovery_wait_time: float = DEFAULT_DISCOVERY_WAIT_TIME
    discovery_interval: float = DEFAULT_DISCOVERY_INTERVAL
    retry: RetrySchedule = DEFAULT_RETRY_SCHEDULE
    commit_retry: RetrySchedule = COMMIT_RETRY_SCHEDULE

    def __str__(self) -> str:
        return f"WizConfig({json.dumps(self.to_json_data())})"

    def __repr__(self) -> str:
        return str(self)

    @classmethod
    def from_json_data(cls, data: Jsonable, context: Optional[ConfigContext]=None) -> WizConfig:
        if not isinstance(data, dict):
            raise ValueError(f"WizConfig: expected a JSON object, got {type(data).__name__}")
        if context is None:
            context = ConfigContext()
        rendered = context.render_template_json_data(data)
        assert isinstance(rendered, dict)
        cfg = cls()
        cfg.device_port = _get_int(rendered, "device_port", cfg.device_port)
        cfg.push_port = _get_int(rendered, "push_port", cfg.push_port)
        cfg.dial_port = _get_int(rendered, "dial_port", cfg.dial_port)
        cfg.source_ip = _get_optional_str(rendered, "source_ip")
        broadcast_address = _get_optional_str(rendered, "broadcast_address")
        if not broadcast_address is None:
            cfg.broadcast_address = broadcast_address
        cfg.registration_interval = _get_float(rendered, "registration_interval", cfg.registration_interval)
        cfg.debounce_window = _get_float(rendered, "debounce_window", cfg.debounce_window)
        cfg.discovery_wait_time = _get_float(rendered, "discovery_wait_time", cfg.discovery_wait_time)
        cfg.discovery_interval = _get_float(rendered, "discovery_interval", cfg.discovery_interval)
        cfg.retry = cls._get_schedule(rendered, "retry", cfg.retry)
        cfg.commit_retry = cls._get_schedule(rendered, "commit_retry", cfg.commit_retry)
        return cfg

    @staticmethod
    def _get_schedule(data: Mapping[str, Jsonable], key: str, default: RetrySchedule) -> RetrySchedule:
        value = data.get(key)
        if value is None:
            return default
        if not isinstance(value, dict):
            raise ValueError(f"WizConfig: Expected {key} to be an object, got {value!r}")
        merged: JsonableDict = default.to_json_data()
        merged.update(value)
        try:
            return RetrySchedule.from_json_data(merged)
        except TypeError as e:
            raise ValueError(f"WizConfig: Invalid {key}: {e}") from e

    @classmethod
    def loads(cls, s: str, context: Optional[ConfigContext]=None) -> WizConfig:
        return cls.from_json_data(json.loads(s), context=context)

    @classmethod
    def load_file(cls, config_file: str, context: Optional[ConfigContext]=None) -> WizConfig:
        config_file = os.path.abspath(os.path.expanduser(config_file))
        with open(config_file) as f:
            return cls.loads(f.read(), context=context)

    def to_json_data(self) -> JsonableDict:
        return {
            "device_port": self.device_port,
            "push_port": self.push_port,
            "dial_port": self.dial_port,
            "source_ip": self.source_ip,
            "broadcast_address": self.broadcast_address,
            "registration_interval": self.registration_interval,
            "debounce_window": self.debounce_window,
            "discovery_wait_time": self.discovery_wait_time,
            "discovery_interval": self.discovery_interval,
            "retry": self.retry.to_json_data(),
            "commit_retry": self.commit_retry.to_json_data(),
          }
