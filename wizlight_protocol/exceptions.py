#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Exceptions defined by this package"""

from __future__ import annotations

from typing import Optional

class WizError(Exception):
    """Base class for all error exceptions defined by this package."""
    pass

class WizConnectionError(WizError):
    """A socket could not be created, bound, or sent on while talking to a device."""
    pass

class WizTimeoutError(WizError):
    """A command exchange exhausted its retry schedule without receiving a response."""
    pass

class WizProtocolError(WizError):
    """A datagram could not be decoded as a protocol message.

    Listeners drop the offending datagram; this never ends a listening loop."""
    pass

class WizResponseError(WizError):
    """The device answered a command with an "error" object."""

    code: Optional[int]
    """The error code reported by the device, if any"""

    def __init__(self, message: str, code: Optional[int]=None):
        super().__init__(message)
        self.code = code

class WizMethodNotFound(WizResponseError):
    """The device does not implement the requested method (JSON-RPC code -32601).

    This is a capability gap of the model/firmware, not a transient failure."""
    pass
