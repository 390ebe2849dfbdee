#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Type hints used internally by this package. Modules in this package
import everything from here with "from .internal_types import *".
"""

from __future__ import annotations

from typing import (
    Dict, List, Optional, Set, Tuple, Union, Any, Callable, Awaitable,
    Iterable, Iterator, Mapping, MutableMapping, Sequence, Type, TypeVar, Generic,
    AsyncIterable, AsyncIterator, AsyncContextManager, Coroutine, cast,
  )
from types import TracebackType
from typing_extensions import Self

HostAndPort = Tuple[str, int]
"""An (ip_address, port) tuple as used by asyncio datagram transports."""

Jsonable = Union[str, int, float, bool, None, Dict[str, Any], List[Any]]
JsonableDict = Dict[str, Jsonable]
