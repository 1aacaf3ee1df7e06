# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Type hints used internally by this package"""

from __future__ import annotations

from typing import (
    Dict, List, Optional, Union, Any, TYPE_CHECKING, Tuple, Set, Callable, Awaitable,
    Iterable, Iterator, AsyncIterable, AsyncIterator, AsyncContextManager, Mapping,
    MutableMapping, Sequence, Generic, TypeVar, cast,
  )

from types import TracebackType
from typing_extensions import Self

JsonableTypes = (str, int, float, bool, dict, list)
# A tuple of types to use for isinstance checking of JSON-serializable types. Excludes None. Useful for isinstance.

Jsonable = Union[str, int, float, bool, None, Dict[str, Any], List[Any]]
"""A Type hint for a simple JSON-serializable value; i.e., str, int, float, bool, None, Dict[str, Jsonable], List[Jsonable]"""

JsonableDict = Dict[str, Jsonable]
"""A type hint for a simple JSON-serializable dict; i.e., Dict[str, Jsonable]"""

HostAndPort = Tuple[str, int]
"""A type hint for an (ip_address, port) tuple as used by socket and asyncio datagram APIs"""
