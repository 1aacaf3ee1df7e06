#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
WizSocket -- An abstract base class for a long-lived WiZ listener socket that can:

  1. Listen on a unicast or broadcast UDP port
  2. Receive and decode WizMessages from devices and deliver them to any number of async subscribers
  3. Send WizMessages to a device or broadcast address

  The subscriber interface is a simple async iterator (WizSubscriber) that returns a sequence of
  items until the source is closed. WizEventSource provides the same fan-out for any item type, so
  listeners can publish decoded events (push updates, dial events) as well as raw datagrams.

  Subclasses must implement the add_socket_bindings() method to create and bind the socket(s) that will
  be used to receive and send datagrams.
"""

from __future__ import annotations


import asyncio
from asyncio import Future
import socket
from abc import ABC, abstractmethod

from wizlight_protocol.internal_types import *
from .pkg_logging import logger
from .exceptions import WizError, WizProtocolError
from .wiz_message import WizMessage, decode_message

MAX_QUEUE_SIZE = 1000

_T = TypeVar('_T')

class WizSocketBinding:
    """
    An encapsulation of the binding of a WizSocket to a single low-level
    bound datagram socket.

    Instances of this class are created prior to loop.create_datagram_endpoint,
    and are later bound to the _WizSocketProtocol instance that is created by
    loop.create_datagram_endpoint.
    """

    wiz_socket: Optional[WizSocket] = None
    """The WizSocket that is bound to this low-level socket. """

    index: int = -1
    """The index of this socket binding within WizSocket. Set to -1 until this socket binding is added."""

    sock: Optional[socket.socket] = None
    """The low-level socket that is bound to this WizSocket."""

    _protocol: Optional[_WizSocketProtocol] = None
    """The adapter between the asyncio transport and this WizSocket."""

    _transport: Optional[asyncio.DatagramTransport] = None
    """The asyncio transport that is bound to this WizSocket."""

    bound_addr: HostAndPort
    """The local ip address and port that the socket is bound to."""

    sockname: str
    """The name of the socket as it should be displayed in logs, etc"""

    def __init__(self, sock: socket.socket, sockname: Optional[str]=None):
        self.sock = sock
        bound_addr = sock.getsockname()
        assert isinstance(bound_addr, tuple)
        self.bound_addr = (bound_addr[0], bound_addr[1])
        if sockname is None:
            sockname = f"{self.bound_addr[0]}:{self.bound_addr[1]}"
        self.sockname = sockname

    async def attach_to_wiz_socket(self, wiz_socket: WizSocket, index: int) -> None:
        if self.index >= 0:
            raise WizError(f"Attempt to reattach WizSocketBinding: {self}")
        assert self.wiz_socket is None or self.wiz_socket == wiz_socket
        self.wiz_socket = wiz_socket
        self.index = index

    @property
    def port(self) -> int:
        """The local port number that the socket is bound to"""
        return self.bound_addr[1]

    @property
    def transport(self) -> Optional[asyncio.DatagramTransport]:
        return self._transport

    @transport.setter
    def transport(self, transport: Optional[asyncio.DatagramTransport]) -> None:
        if transport != self._transport:
            assert self._transport is None or transport is None
        self._transport = transport

    @property
    def protocol(self) -> Optional[_WizSocketProtocol]:
        return self._protocol

    @protocol.setter
    def protocol(self, protocol: _WizSocketProtocol) -> None:
        if protocol != self._protocol:
            assert self._protocol is None
        self._protocol = protocol

    def sendto(self, message: WizMessage, addr: HostAndPort) -> None:
        logger.debug(f"Sending WizMessage via {self} to {addr}: {message}")
        if self.transport is None:
            raise WizError(f"Cannot send on closed socket binding {self}")
        self.transport.sendto(message.raw_data, addr)

    def __str__(self) -> str:
        return f"WizSocketBinding({self.index}: {self.sockname})"

    def __repr__(self) -> str:
        return str(self)

class _WizSocketProtocol(asyncio.DatagramProtocol):
    """An adapter between the asyncio transport and WizSocket. There is one instance of this class
       created for each low-level socket that is created.
       """
    socket_binding: WizSocketBinding

    def __init__(self, socket_binding: WizSocketBinding):
        self.socket_binding = socket_binding
        socket_binding.protocol = self

    @property
    def wiz_socket(self) -> WizSocket:
        assert self.socket_binding.wiz_socket is not None
        return self.socket_binding.wiz_socket

    @property
    def transport(self) -> Optional[asyncio.DatagramTransport]:
        return self.socket_binding.transport

    @transport.setter
    def transport(self, transport: Optional[asyncio.DatagramTransport]) -> None:
        self.socket_binding.transport = transport

    def connection_made(self, transport: asyncio.BaseTransport):
        """Called when a connection is made."""
        # asyncio datagram transports do not inherit from asyncio.DatagramTransport, so no isinstance check here.
        assert self.transport is None
        try:
            self.transport = transport # type: ignore[assignment]
            self.wiz_socket.connection_made(self.socket_binding)
        except BaseException as e:
            self.wiz_socket.set_final_exception(e)
            raise

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        """Called when some datagram is received."""
        try:
            self.wiz_socket.datagram_received(self.socket_binding, addr, data)
        except BaseException as e:
            self.wiz_socket.set_final_exception(e)
            raise

    def error_received(self, exc: Exception):
        """Called when a send or receive operation raises an OSError.

        (Other than BlockingIOError or InterruptedError.)
        """
        try:
            self.wiz_socket.error_received(self.socket_binding, exc)
        except BaseException as e:
            self.wiz_socket.set_final_exception(e)
            raise

    def connection_lost(self, exc: Optional[Exception]) -> None:
        """Called when the connection is lost or closed."""
        try:
            self.wiz_socket.connection_lost(self.socket_binding, exc)
        except BaseException as e:
            self.wiz_socket.set_final_exception(e)
            raise
        self.transport = None


class WizSubscriber(
        AsyncContextManager['WizSubscriber'],
        AsyncIterable[_T]
      ):
    """A queue-backed async iterator over the items published by a WizEventSource.

    Must be created from within a running event loop.

    Usage:
        async with WizSubscriber(source) as subscriber:
            async for item in subscriber:
                ...
    """
    source: WizEventSource[_T]
    queue: asyncio.Queue[Optional[_T]]
    final_result: Future[None]
    eos: bool = False
    eos_exc: Optional[Exception] = None

    def __init__(self, source: WizEventSource[_T], max_queue_size: int=MAX_QUEUE_SIZE):
        self.source = source
        self.queue = asyncio.Queue(max_queue_size)
        self.final_result = asyncio.get_running_loop().create_future()

    async def __aenter__(self) -> WizSubscriber[_T]:
        await self.source.add_subscriber(self)
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self.source.remove_subscriber(self)
        self.set_final_result()
        try:
            # ensure that final_result has been awaited
            await self.final_result
        except Exception as e:
            logger.debug(f"Subscriber ended with exception: {e}")
        return False

    async def iter_items(self) -> AsyncIterator[_T]:
        while True:
            result = await self.receive()
            if result is None:
                break
            yield result

    def __aiter__(self) -> AsyncIterator[_T]:
        return self.iter_items()

    def _wake_waiters(self) -> None:
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            # queue is full so waiters will wake up soon
            pass

    def set_final_result(self) -> None:
        if not self.final_result.done():
            self.final_result.set_result(None)
            self._wake_waiters()
            self.eos = True
            self.eos_exc = None

    def set_final_exception(self, e: BaseException) -> None:
        if not self.final_result.done():
            self.final_result.set_exception(e)
            self._wake_waiters()
            self.eos = True
            self.eos_exc = None

    async def receive(self) -> Optional[_T]:
        """Waits for the next item. Returns None at end of stream."""
        if self.final_result.done():
            await self.final_result
            return None
        if self.eos and self.queue.empty():
            if self.eos_exc is None:
                self.set_final_result()
            else:
                self.set_final_exception(self.eos_exc)
            await self.final_result
            return None
        try:
            result = await self.queue.get()
            self.queue.task_done()
            if result is None:
                if not self.final_result.done():
                    assert self.eos
                    if self.eos_exc is None:
                        self.set_final_result()
                    else:
                        self.set_final_exception(self.eos_exc)
                await self.final_result
                return None
        except BaseException as e:
            self.set_final_exception(e)
            raise
        return result

    def on_item(self, item: _T) -> None:
        if not self.eos and not self.final_result.done():
            try:
                self.queue.put_nowait(item)
            except asyncio.QueueFull:
                logger.warning(f"Queue full, dropping {item}")

    def on_end_of_stream(self, exc: Optional[Exception]=None) -> None:
        if not self.eos and not self.final_result.done():
            self.eos = True
            self.eos_exc = exc
            self._wake_waiters()

class WizEventSource(Generic[_T]):
    """Fans out published items to any number of WizSubscribers."""

    subscribers: Set[WizSubscriber[_T]]
    """The subscribers that currently wish to receive items."""

    def __init__(self):
        self.subscribers = set()

    async def add_subscriber(self, subscriber: WizSubscriber[_T]) -> None:
        self.subscribers.add(subscriber)

    async def remove_subscriber(self, subscriber: WizSubscriber[_T]) -> None:
        self.subscribers.discard(subscriber)

    def subscribe(self, max_queue_size: int=MAX_QUEUE_SIZE) -> WizSubscriber[_T]:
        """Creates a subscriber for this source. Use as an async context manager."""
        return WizSubscriber(self, max_queue_size=max_queue_size)

    def publish(self, item: _T) -> None:
        for subscriber in list(self.subscribers):
            try:
                subscriber.on_item(item)
            except Exception as e:
                logger.warning(f"Subscriber raised exception processing {item}: {e}")

    def end_subscribers(self, exc: Optional[Exception]=None) -> None:
        for subscriber in list(self.subscribers):
            try:
                subscriber.on_end_of_stream(exc)
            except Exception as e:
                logger.warning(f"Subscriber raised exception processing end of stream: {e}")

WizDatagramItem = Tuple[WizSocketBinding, HostAndPort, WizMessage]
"""An item published by a WizSocket: (socket_binding, source_address, message)"""

class WizSocket(WizEventSource[WizDatagramItem], AsyncContextManager['WizSocket'], ABC):
    """
    An abstract async WiZ socket that can:

      1. Listen on a unicast or broadcast UDP port
      2. Receive and decode WizMessages from devices and deliver them to any number of async subscribers
      3. Send WizMessages to a device or broadcast address

      Subclasses must implement the add_socket_bindings() method to create and bind the socket(s) that will be used to
      receive and send datagrams, and may override handle_message() to act on decoded messages synchronously,
      as they arrive.
    """

    socket_bindings: List[WizSocketBinding]
    """A list of WizSocketBinding instances, one for each low-level socket that is in use."""

    final_result: Optional[Future[None]] = None
    """A future that is set when the wiz_socket is stopped. Created by start()."""

    def __init__(self):
        super().__init__()
        self.socket_bindings = []

    async def add_socket_binding(self, socket_binding: WizSocketBinding) -> None:
        if socket_binding.index >= 0:
            raise WizError(f"Attempt to reattach WizSocketBinding: {socket_binding}")
        i = len(self.socket_bindings)
        self.socket_bindings.append(socket_binding)
        await socket_binding.attach_to_wiz_socket(self, i)
        logger.debug(f"Added socket binding {i}: {socket_binding}")

    @abstractmethod
    async def add_socket_bindings(self) -> None:
        """Abstract method that creates and binds the sockets that will be used to receive
           and send datagrams, and adds them with self.add_socket_binding().
           Must be overridden by subclasses."""
        raise NotImplementedError()

    async def finish_start(self) -> None:
        """Called after the socket is up and running.  Subclasses can override to do additional
           initialization."""
        pass

    @property
    def is_running(self) -> bool:
        return self.final_result is not None and not self.final_result.done()

    async def start(self) -> None:
        if self.final_result is not None:
            raise WizError(f"{self.__class__.__name__} can only be started once")
        loop = asyncio.get_running_loop()
        self.final_result = loop.create_future()
        try:
            await self.add_socket_bindings()
            if len(self.socket_bindings) == 0:
                raise WizError("No datagram sockets were added to WizSocket")

            for socket_binding in self.socket_bindings:
                untyped_transport, protocol = await loop.create_datagram_endpoint(
                    lambda: _WizSocketProtocol(socket_binding),
                    sock=socket_binding.sock
                  )
                # asyncio datagram transports do not inherit from asyncio.DatagramTransport; keep mypy happy.
                transport: asyncio.DatagramTransport = untyped_transport # type: ignore[assignment]
                assert isinstance(protocol, _WizSocketProtocol)
                logger.debug(f"Created datagram endpoint for {socket_binding}. transport={transport}, protocol={protocol}")
                socket_binding.protocol = protocol
                socket_binding.transport = transport

            await self.finish_start()

        except BaseException as e:
            self.set_final_exception(e)
            try:
                await self.wait_for_done()
            except BaseException:
                pass
            raise

    async def stop(self) -> None:
        """Stops the WizSocket."""
        self.close()

    def close(self) -> None:
        """Stops the WizSocket synchronously. Subscribers see end of stream."""
        self.end_subscribers()
        self.set_final_result()

    async def wait_for_dependents_done(self) -> None:
        """Called after final_result has been awaited.  Subclasses can override to do additional
           cleanup."""
        pass

    async def wait_for_done(self) -> None:
        assert self.final_result is not None
        try:
            await self.final_result
        finally:
            await self.wait_for_dependents_done()

    async def stop_and_wait(self) -> None:
        await self.stop()
        await self.wait_for_done()

    def connection_made(self, socket_binding: WizSocketBinding) -> None:
        """Called when a connection is made."""
        logger.debug(f"Connection made: {socket_binding}")

    def accept_datagram(self, socket_binding: WizSocketBinding, addr: HostAndPort, data: bytes) -> bool:
        """Called with every raw datagram before it is decoded. Return False to drop it silently.
           Subclasses can override."""
        return True

    def handle_message(self, socket_binding: WizSocketBinding, addr: HostAndPort, message: WizMessage) -> None:
        """Called synchronously with every decoded message, before it is published to subscribers.
           Subclasses can override."""
        pass

    def datagram_received(self, socket_binding: WizSocketBinding, addr: HostAndPort, data: bytes):
        """Called when some datagram is received."""
        if not self.accept_datagram(socket_binding, addr, data):
            return
        try:
            message = decode_message(data)
        except WizProtocolError as e:
            logger.warning(f"Dropping datagram from {addr} on {socket_binding}: {e}")
            return
        except Exception as e:
            # a single bad datagram never ends the listener
            logger.warning(f"Dropping undecodable datagram from {addr} on {socket_binding}: {type(e).__name__}: {e}")
            return
        logger.debug(f"Received message from {addr} on {socket_binding}: {message}")
        try:
            self.handle_message(socket_binding, addr, message)
        except Exception as e:
            logger.warning(f"Error handling message {message} from {addr}: {e}")
        self.publish((socket_binding, addr, message))

    def error_received(self, socket_binding: WizSocketBinding, exc: Exception) -> None:
        """Called when a send or receive operation raises an OSError.

        (Other than BlockingIOError or InterruptedError.)

        A UDP error (e.g., an ICMP unreachable for an earlier send) does not end the listener.
        """
        logger.info(f"Error received from transport {socket_binding}: {exc}")

    def connection_lost(self, socket_binding: WizSocketBinding, exc: Optional[Exception]) -> None:
        """Called when the connection is lost or closed."""
        logger.debug(f"Connection to transport lost on {socket_binding}, exc={exc}")
        self.end_subscribers(exc)
        if exc is None:
            self.set_final_result()
        else:
            self.set_final_exception(exc)

    def _close_all_transports(self) -> None:
        for socket_binding in self.socket_bindings:
            if not socket_binding.transport is None:
                try:
                    socket_binding.transport.close()
                except Exception as e:
                    logger.error(f"Error closing transport on {socket_binding}: {e}")
                socket_binding.transport = None

    def _close_all_socks(self) -> None:
        for socket_binding in self.socket_bindings:
            if not socket_binding.sock is None:
                try:
                    socket_binding.sock.close()
                    socket_binding.sock = None
                except Exception as e:
                    logger.error(f"Error closing socket on {socket_binding}: {e}")

    def set_final_exception(self, exc: BaseException) -> None:
        assert not exc is None
        if self.final_result is None:
            self.final_result = asyncio.get_running_loop().create_future()
        if not self.final_result.done():
            logger.debug(f"{self.__class__.__name__}: Setting final exception: {exc}")
            self.final_result.set_exception(exc)
            self._close_all_transports()
            self._close_all_socks()

    def set_final_result(self) -> None:
        if self.final_result is None:
            self.final_result = asyncio.get_running_loop().create_future()
        if not self.final_result.done():
            logger.debug(f"{self.__class__.__name__}: Setting final result to success")
            self.final_result.set_result(None)
            self._close_all_transports()
            self._close_all_socks()

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        self.end_subscribers()
        if exc is None:
            self.set_final_result()
        else:
            self.set_final_exception(exc)
        try:
            # ensure that final_result has been awaited
            await self.wait_for_done()
        except Exception:
            pass
        return False

class WizListenerSocket(WizSocket):
    """A WizSocket bound to a single local UDP address and port, with broadcast reception enabled.

       The bind happens in start(); an OSError (e.g., the port is already in use) propagates from there.
       Subclasses override handle_message() and accept_datagram().
    """

    bind_address: str
    """The local IP address to bind to. "0.0.0.0" for all interfaces."""

    requested_port: int
    """The local port to bind to. 0 picks an ephemeral port."""

    def __init__(self, bind_address: str='0.0.0.0', port: int=0):
        super().__init__()
        self.bind_address = bind_address
        self.requested_port = port

    #@override
    async def add_socket_bindings(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((self.bind_address, self.requested_port))
            sock.setblocking(False)
        except BaseException:
            sock.close()
            raise
        await self.add_socket_binding(WizSocketBinding(sock))

    @property
    def port(self) -> Optional[int]:
        """The port actually bound, or None before start()."""
        if len(self.socket_bindings) == 0:
            return None
        return self.socket_bindings[0].port
