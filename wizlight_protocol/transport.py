#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Reliable command transport for the WiZ UDP protocol.

Each command is one WizExchange: a fresh ephemeral UDP socket, a datagram sent
immediately and retransmitted according to a RetrySchedule, and an overall deadline.
The first datagram that arrives on the socket is the response. Whichever of
{response, deadline, socket failure} happens first completes the exchange; all
pending timers are then cancelled and the socket is closed.

Callers must not have more than one exchange outstanding to the same device at a
time (see WizDevice, which serializes commands with a lock).
"""

from __future__ import annotations

import asyncio
from asyncio import Future, TimerHandle

from wizlight_protocol.internal_types import *
from .pkg_logging import logger
from .exceptions import WizConnectionError, WizTimeoutError
from .constants import WIZ_DEVICE_PORT
from .retry_schedule import RetrySchedule, DEFAULT_RETRY_SCHEDULE

class _WizExchangeProtocol(asyncio.DatagramProtocol):
    """An adapter between the asyncio transport and a single WizExchange."""

    exchange: WizExchange

    def __init__(self, exchange: WizExchange):
        self.exchange = exchange

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.exchange.on_response(data, (addr[0], addr[1]))

    def error_received(self, exc: Exception) -> None:
        self.exchange.on_error(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if not exc is None:
            self.exchange.on_error(exc)

class WizExchange:
    """One in-flight request/response exchange with a device.

    An exchange can only be run once.
    """

    data: bytes
    """The datagram payload, retransmitted unchanged on every attempt."""

    host: str
    """The target IP address (may be a broadcast address)."""

    port: int
    """The target UDP port."""

    schedule: RetrySchedule
    """The retransmission offsets and overall deadline."""

    attempts_sent: int = 0
    """The number of datagrams actually transmitted so far."""

    final_result: Optional[Future[Tuple[bytes, HostAndPort]]] = None
    """Completion slot. Set exactly once, with the response or with an exception."""

    _transport: Optional[asyncio.DatagramTransport] = None
    _handles: List[TimerHandle]

    def __init__(
            self,
            data: bytes,
            host: str,
            port: int=WIZ_DEVICE_PORT,
            schedule: RetrySchedule=DEFAULT_RETRY_SCHEDULE,
          ):
        self.data = data
        self.host = host
        self.port = port
        self.schedule = schedule
        self._handles = []

    def __str__(self) -> str:
        return f"WizExchange(to={self.host}:{self.port}, attempts_sent={self.attempts_sent})"

    def __repr__(self) -> str:
        return str(self)

    @property
    def done(self) -> bool:
        return not self.final_result is None and self.final_result.done()

    async def run(self) -> Tuple[bytes, HostAndPort]:
        """Performs the exchange.

        Returns (response_bytes, (sender_ip, sender_port)).
        Raises WizTimeoutError if no datagram arrives before the deadline, or
        WizConnectionError if the socket cannot be created or a send fails.
        """
        if not self.final_result is None:
            raise RuntimeError(f"{self} can only be run once")
        loop = asyncio.get_running_loop()
        self.final_result = loop.create_future()
        try:
            try:
                untyped_transport, _ = await loop.create_datagram_endpoint(
                    lambda: _WizExchangeProtocol(self),
                    local_addr=('0.0.0.0', 0),
                    allow_broadcast=True,
                  )
            except OSError as e:
                raise WizConnectionError(f"Unable to create UDP socket for {self.host}:{self.port}: {e}") from e
            # asyncio datagram transports do not inherit from asyncio.DatagramTransport; keep mypy happy.
            self._transport = untyped_transport # type: ignore[assignment]

            self._transmit()
            for offset in self.schedule.offsets[1:]:
                self._handles.append(loop.call_later(offset, self._transmit))
            self._handles.append(loop.call_later(self.schedule.timeout, self._on_deadline))

            return await self.final_result
        finally:
            self._release()

    def _transmit(self) -> None:
        if self.done or self._transport is None:
            return
        self.attempts_sent += 1
        logger.debug(f"{self}: sending attempt {self.attempts_sent}/{self.schedule.max_attempts}: {self.data!r}")
        try:
            self._transport.sendto(self.data, (self.host, self.port))
        except (OSError, ValueError, RuntimeError) as e:
            self._complete_exception(WizConnectionError(f"Send to {self.host}:{self.port} failed: {e}"))

    def _on_deadline(self) -> None:
        self._complete_exception(WizTimeoutError(
            f"No response from {self.host}:{self.port} after {self.attempts_sent} attempts "
            f"in {self.schedule.timeout} seconds"))

    def on_response(self, data: bytes, addr: HostAndPort) -> None:
        """Called with every datagram received on the exchange socket. Only the first counts."""
        assert not self.final_result is None
        if self.final_result.done():
            logger.debug(f"{self}: ignoring late datagram from {addr}: {data!r}")
            return
        logger.debug(f"{self}: response from {addr}: {data!r}")
        self.final_result.set_result((data, addr))
        self._release()

    def on_error(self, exc: Exception) -> None:
        """Called when the socket reports an error."""
        if isinstance(exc, ConnectionRefusedError):
            # ICMP port unreachable for an earlier attempt; the device may just be busy.
            logger.debug(f"{self}: ignoring transient socket error: {exc}")
            return
        self._complete_exception(WizConnectionError(f"Socket error communicating with {self.host}:{self.port}: {exc}"))

    def _complete_exception(self, exc: Exception) -> None:
        assert not self.final_result is None
        if not self.final_result.done():
            logger.debug(f"{self}: failed: {exc}")
            self.final_result.set_exception(exc)
            self._release()

    def _release(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        if not self._transport is None:
            try:
                self._transport.close()
            except Exception as e:
                logger.error(f"{self}: error closing transport: {e}")
            self._transport = None

async def send(
        data: bytes,
        host: str,
        port: int=WIZ_DEVICE_PORT,
        schedule: RetrySchedule=DEFAULT_RETRY_SCHEDULE,
      ) -> Tuple[bytes, HostAndPort]:
    """Sends a command datagram to a device and waits for the first response.

    Returns (response_bytes, (sender_ip, sender_port)). Error replies from the device are
    returned as ordinary response bytes.

    Raises WizTimeoutError or WizConnectionError.
    """
    exchange = WizExchange(data, host, port=port, schedule=schedule)
    return await exchange.run()
