#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
WizDialListener -- receives WiZ Smart Dial events.

Dials broadcast syncAccEvt messages to port 38899 without any registration. The
listener decodes each one into a DialEvent, drops repeated button presses with a
DialEventDebouncer, and delivers the surviving events to:

  1. A global callback, if set
  2. The callback subscribed for the dial's MAC, if any
  3. Any async WizSubscribers created with subscribe_events()
"""

from __future__ import annotations

from wizlight_protocol.internal_types import *
from .pkg_logging import logger
from .constants import WIZ_DEVICE_PORT, DEFAULT_DEBOUNCE_WINDOW
from .wiz_message import WizMessage, SyncAccEvtMessage
from .wiz_socket import WizListenerSocket, WizSocketBinding, WizEventSource, WizSubscriber
from .dial_event import DialEvent, DialEventDebouncer, decode_dial_event
from .util import normalize_mac

DialEventCallback = Callable[[DialEvent], None]

class _DialSocket(WizListenerSocket):
    listener: WizDialListener

    def __init__(self, listener: WizDialListener, bind_address: str, port: int):
        super().__init__(bind_address=bind_address, port=port)
        self.listener = listener

    #@override
    def handle_message(self, socket_binding: WizSocketBinding, addr: HostAndPort, message: WizMessage) -> None:
        if isinstance(message, SyncAccEvtMessage):
            self.listener.handle_sync_acc_evt(addr, message)

class WizDialListener(AsyncContextManager['WizDialListener']):
    """Listens for Smart Dial events on a UDP port. Can be started and stopped repeatedly."""

    port: int
    """The port to listen on. 0 picks an ephemeral port."""

    bind_address: str

    debouncer: DialEventDebouncer

    fail_reason: Optional[str] = None
    """Why the most recent start() failed, or None."""

    events: WizEventSource[DialEvent]
    """Fan-out of accepted events to async subscribers."""

    _socket: Optional[_DialSocket] = None
    _callbacks: Dict[str, DialEventCallback]
    _global_callback: Optional[DialEventCallback] = None

    def __init__(
            self,
            port: int=WIZ_DEVICE_PORT,
            bind_address: str='0.0.0.0',
            debounce_window: float=DEFAULT_DEBOUNCE_WINDOW,
          ):
        self.port = port
        self.bind_address = bind_address
        self.debouncer = DialEventDebouncer(window=debounce_window)
        self.events = WizEventSource()
        self._callbacks = {}

    @property
    def is_running(self) -> bool:
        return not self._socket is None and self._socket.is_running

    @property
    def bound_port(self) -> Optional[int]:
        """The port actually bound while running, else None."""
        if self._socket is None:
            return None
        return self._socket.port

    async def start(self) -> bool:
        """Starts listening. Returns True on success (or if already running). On failure,
           returns False and sets fail_reason."""
        if self.is_running:
            logger.info("WizDialListener already running")
            return True
        logger.info(f"Starting WizDialListener on {self.bind_address}:{self.port}")
        dial_socket = _DialSocket(self, self.bind_address, self.port)
        try:
            await dial_socket.start()
        except OSError as e:
            self.fail_reason = f"Unable to listen for dial events on {self.bind_address}:{self.port}: {e}"
            logger.warning(f"Failed to start WizDialListener: {self.fail_reason}")
            return False
        self._socket = dial_socket
        self.fail_reason = None
        logger.info(f"WizDialListener listening on port {dial_socket.port}")
        return True

    async def stop(self) -> None:
        """Stops listening. Subscriptions and the global callback are kept for the next start()."""
        dial_socket = self._socket
        if dial_socket is None:
            return
        logger.info("Stopping WizDialListener")
        self._socket = None
        self.events.end_subscribers()
        await dial_socket.stop_and_wait()

    def subscribe(self, mac: str, callback: DialEventCallback) -> Callable[[], None]:
        """Delivers events from one dial to callback, replacing any previous callback for that dial.
           Returns a function that removes the subscription."""
        key = normalize_mac(mac)
        logger.info(f"Subscribing to dial {key}")
        self._callbacks[key] = callback
        def unsubscribe() -> None:
            if self._callbacks.get(key) is callback:
                self.unsubscribe(key)
        return unsubscribe

    def unsubscribe(self, mac: str) -> None:
        key = normalize_mac(mac)
        logger.info(f"Unsubscribing from dial {key}")
        self._callbacks.pop(key, None)

    def set_global_callback(self, callback: Optional[DialEventCallback]) -> None:
        """Sets a callback invoked for every accepted event from any dial. None clears it."""
        self._global_callback = callback

    @property
    def subscribed_dials(self) -> List[str]:
        return list(self._callbacks.keys())

    def subscribe_events(self) -> WizSubscriber[DialEvent]:
        """Returns an async context manager/iterator over accepted events from all dials.

        Usage:
            async with listener.subscribe_events() as subscriber:
                async for event in subscriber:
                    ...
        """
        return self.events.subscribe()

    def handle_sync_acc_evt(self, addr: HostAndPort, message: WizMessage) -> None:
        event = decode_dial_event(message)
        if event is None:
            logger.warning(f"Failed to decode dial event from {addr}: {message}")
            return
        if not self.debouncer.accept(event):
            return
        logger.debug(f"Received dial event from {addr}: {event}")
        self._dispatch(event)

    def _dispatch(self, event: DialEvent) -> None:
        callbacks: List[DialEventCallback] = []
        if not self._global_callback is None:
            callbacks.append(self._global_callback)
        callback = self._callbacks.get(normalize_mac(event.mac))
        if not callback is None:
            callbacks.append(callback)
        for cb in callbacks:
            try:
                cb(event)
            except Exception as e:
                logger.warning(f"Dial event callback raised exception for {event}: {e}")
        self.events.publish(event)

    async def __aenter__(self) -> WizDialListener:
        if not await self.start():
            raise OSError(self.fail_reason)
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self.stop()
        return False

class WizDial:
    """A single Smart Dial, identified by MAC, that remembers its most recent event."""

    mac: str
    name: Optional[str]
    listener: WizDialListener

    last_event: Optional[DialEvent] = None

    _unsubscribe: Optional[Callable[[], None]] = None

    def __init__(self, mac: str, listener: WizDialListener, name: Optional[str]=None):
        self.mac = normalize_mac(mac)
        self.listener = listener
        self.name = name

    @property
    def is_listening(self) -> bool:
        return self.mac in self.listener.subscribed_dials

    async def start_listening(self, callback: Optional[DialEventCallback]=None) -> bool:
        """Starts the listener if needed and subscribes to this dial's events.
           Returns False if the listener could not be started."""
        if not self.listener.is_running:
            if not await self.listener.start():
                return False
        def on_event(event: DialEvent) -> None:
            self.last_event = event
            if not callback is None:
                callback(event)
        self._unsubscribe = self.listener.subscribe(self.mac, on_event)
        return True

    def stop_listening(self) -> None:
        if not self._unsubscribe is None:
            self._unsubscribe()
            self._unsubscribe = None

    def __str__(self) -> str:
        name = "" if self.name is None else f", name={self.name!r}"
        return f"WizDial(mac={self.mac}{name})"

    def __repr__(self) -> str:
        return str(self)
