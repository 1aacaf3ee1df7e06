"""Shared test utilities for wizlight_protocol tests."""

from __future__ import annotations

import asyncio
import base64
import json
import socket

from wizlight_protocol import RetrySchedule

BULB_MAC = "a8bb50aabbcc"

# The default schedule scaled down by 25x: sends at 0, .03, .09, .21, .33, .45; deadline .52
FAST_SCHEDULE = RetrySchedule(max_attempts=6, first_interval=0.03, max_interval=0.12, timeout=0.52)
FAST_COMMIT_SCHEDULE = RetrySchedule(max_attempts=3, first_interval=0.03, max_interval=0.12, timeout=0.2)
# Retransmits late enough that a loopback reply always arrives first
PATIENT_SCHEDULE = RetrySchedule(max_attempts=3, first_interval=0.25, max_interval=0.25, timeout=0.6)


class FakeBulb(asyncio.DatagramProtocol):
    """A fake device on 127.0.0.1 that records every request and replies to it."""

    def __init__(
        self,
        mac: str = BULB_MAC,
        drop_first: int = 0,
        silent: bool = False,
        duplicates: int = 0,
        reply_delay: float = 0.0,
    ) -> None:
        self.mac = mac
        self.drop_first = drop_first
        self.silent = silent
        self.duplicates = duplicates
        self.reply_delay = reply_delay
        self.transport: asyncio.DatagramTransport | None = None
        self.received: list[tuple[dict, tuple[str, int]]] = []
        self.receive_times: list[float] = []
        self.errors: dict[str, tuple[int, str]] = {}
        self.results: dict[str, dict] = {
            "getPilot": {"mac": mac, "rssi": -60, "state": True, "sceneId": 0, "temp": 2700, "dimming": 50},
            "setPilot": {"success": True},
            "getSystemConfig": {"mac": mac, "homeId": 1, "fwVersion": "1.25.0"},
            "getDevInfo": {"mac": mac, "devMac": mac},
            "registration": {"mac": mac, "success": True},
        }

    def connection_made(self, transport) -> None:
        self.transport = transport

    @property
    def port(self) -> int:
        assert self.transport is not None
        return self.transport.get_extra_info("sockname")[1]

    def methods(self) -> list[str]:
        return [request.get("method") for request, _ in self.received]

    def requests_for(self, method: str) -> list[dict]:
        return [request for request, _ in self.received if request.get("method") == method]

    def make_reply(self, request: dict) -> dict:
        method = request.get("method")
        if method in self.errors:
            code, message = self.errors[method]
            return {"method": method, "error": {"code": code, "message": message}}
        if method in self.results:
            return {"method": method, "env": "pro", "result": self.results[method]}
        return {"method": method, "error": {"code": -32601, "message": "Method not found"}}

    def datagram_received(self, data: bytes, addr) -> None:
        request = json.loads(data.decode("utf-8"))
        self.received.append((request, addr))
        self.receive_times.append(asyncio.get_running_loop().time())
        if self.silent or len(self.received) <= self.drop_first:
            return
        reply = json.dumps(self.make_reply(request)).encode("utf-8")
        if self.reply_delay > 0.0:
            asyncio.get_running_loop().call_later(self.reply_delay, self._send_reply, reply, addr)
        else:
            self._send_reply(reply, addr)

    def _send_reply(self, reply: bytes, addr) -> None:
        if self.transport is None or self.transport.is_closing():
            return
        for _ in range(1 + self.duplicates):
            self.transport.sendto(reply, addr)


async def start_fake_bulb(**kwargs) -> FakeBulb:
    loop = asyncio.get_running_loop()
    _, bulb = await loop.create_datagram_endpoint(
        lambda: FakeBulb(**kwargs), local_addr=("127.0.0.1", 0)
    )
    return bulb


def send_udp(data: bytes | dict, port: int, host: str = "127.0.0.1") -> None:
    """Sends one datagram from a throwaway socket."""
    if isinstance(data, dict):
        data = json.dumps(data).encode("utf-8")
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.sendto(data, (host, port))
    finally:
        sock.close()


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.01) -> bool:
    """Polls predicate until it is true or timeout expires. Returns the final value."""
    loop = asyncio.get_running_loop()
    end_time = loop.time() + timeout
    while not predicate():
        if loop.time() >= end_time:
            return bool(predicate())
        await asyncio.sleep(interval)
    return True


def dial_frame(event_type: int, sequence: int = 1, state: int = 0x60) -> str:
    """Builds a base64 13-byte dial frame."""
    frame = (
        sequence.to_bytes(2, "big")
        + b"\x00\x00\x00\x20"
        + bytes([event_type, 0x01, state])
        + b"\xab\x25\xc1\xda"
    )
    return base64.b64encode(frame).decode("ascii")


def sync_acc_evt(mac: str, frame: str) -> dict:
    return {"method": "syncAccEvt", "env": "pro", "params": {"mac": mac, "frame": frame, "rad": 1}}


def sync_pilot(mac: str, **pilot) -> dict:
    params = {"mac": mac, "rssi": -55, "src": "udp", "state": True, "sceneId": 0, "dimming": 80}
    params.update(pilot)
    return {"method": "syncPilot", "env": "pro", "params": params}


def first_beat(mac: str) -> dict:
    return {"method": "firstBeat", "env": "pro", "params": {"mac": mac, "homeId": 1, "fwVersion": "1.25.0"}}
