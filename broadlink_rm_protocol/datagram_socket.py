#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
DatagramSocket -- An abstract base class for a Broadlink UDP endpoint that can:

  1. Bind one or more low-level UDP sockets (e.g., one per network interface)
  2. Receive raw datagrams from remote nodes and hand them to the subclass
  3. Send raw datagrams to a remote broadcast or unicast address

  Subclasses must implement the add_socket_bindings() method to create and bind the sockets that will be used to
  receive and send datagrams, and datagram_received() to process incoming datagrams.
"""

from __future__ import annotations


import asyncio
from asyncio import Future
import socket
from abc import ABC, abstractmethod

from .internal_types import *
from .pkg_logging import logger
from .exceptions import TransportError

class DatagramSocketBinding:
    """
    An encapsulation of the binding of a DatagramSocket to a single low-level
    bound datagram socket. There is one instance of this class created for each
    low-level socket that is in use.

    Instances of this class are created prior to loop.create_datagram_endpoint,
    and are later bound to the _DatagramSocketProtocol instance that is created by
    loop.create_datagram_endpoint.
    """

    datagram_socket: Optional[DatagramSocket] = None
    """The DatagramSocket that is bound to this low-level socket. """

    index: int = -1
    """The index of this socket binding within DatagramSocket. Set to -1 until this socket binding is added."""

    sock: Optional[socket.socket] = None
    """The low-level socket that is bound to this DatagramSocket."""

    _protocol: Optional[_DatagramSocketProtocol] = None
    """The adapter between the asyncio transport and this DatagramSocket.
       This is set when the _DatagramSocketProtocol instance is created by
       loop.create_datagram_endpoint()."""

    _transport: Optional[asyncio.DatagramTransport] = None
    """The asyncio transport that is bound to this DatagramSocket. This is set
       either when _DatagramSocketProtocol.connection_made() is called, or
       when the transport is returned to DatagramSocket by
       loop.create_datagram_endpoint()."""

    unicast_addr: HostAndPort
    """The local ip address and port this binding is bound to."""

    sockname: str
    """The name of the socket as it should be displayed in logs, etc"""

    def __init__(self, sock: socket.socket, unicast_addr: Optional[HostAndPort]=None, sockname: Optional[str]=None):
        self.sock = sock
        if unicast_addr is None:
            unicast_addr = sock.getsockname()
            assert isinstance(unicast_addr, tuple)
        self.unicast_addr = unicast_addr
        if sockname is None:
            bound_addr = sock.getsockname()
            if bound_addr == unicast_addr:
                sockname = str(bound_addr)
            else:
                sockname = f"{bound_addr}@{unicast_addr}"
        self.sockname = sockname

    async def attach_to_datagram_socket(self, datagram_socket: DatagramSocket, index: int) -> None:
        if self.index >= 0:
            raise TransportError(f"Attempt to reattach DatagramSocketBinding: {self}")
        assert self.datagram_socket is None or self.datagram_socket == datagram_socket
        self.datagram_socket = datagram_socket
        self.index = index

    @property
    def transport(self) -> Optional[asyncio.DatagramTransport]:
        return self._transport

    @transport.setter
    def transport(self, transport: Optional[asyncio.DatagramTransport]) -> None:
        if transport != self._transport:
            assert self._transport is None or transport is None
        self._transport = transport

    @property
    def protocol(self) -> Optional[_DatagramSocketProtocol]:
        return self._protocol

    @protocol.setter
    def protocol(self, protocol: _DatagramSocketProtocol) -> None:
        if protocol != self._protocol:
            assert self._protocol is None
        self._protocol = protocol

    def sendto(self, data: bytes, addr: HostAndPort) -> None:
        """Sends a raw datagram. Raises TransportError if the binding is closed or the send fails."""
        logger.debug(f"Sending {len(data)}-byte datagram via {self} to {addr}: {data.hex()}")
        if self.transport is None or self.transport.is_closing():
            raise TransportError(f"Cannot send to {addr}: {self} is closed")
        try:
            self.transport.sendto(data, addr)
        except OSError as e:
            raise TransportError(f"Error sending datagram via {self} to {addr}: {e}") from e

    def __str__(self) -> str:
        return f"DatagramSocketBinding({self.index}: {self.sockname})"

    def __repr__(self) -> str:
        return str(self)

class _DatagramSocketProtocol(asyncio.DatagramProtocol):
    """An adapter between the asyncio transport and DatagramSocket. There is one instance of this class
       created for each low-level socket that is created.
       """
    socket_binding: DatagramSocketBinding

    def __init__(self, socket_binding: DatagramSocketBinding):
        self.socket_binding = socket_binding
        socket_binding.protocol = self

    @property
    def datagram_socket(self) -> DatagramSocket:
        assert self.socket_binding.datagram_socket is not None
        return self.socket_binding.datagram_socket

    @property
    def transport(self) -> Optional[asyncio.DatagramTransport]:
        return self.socket_binding.transport

    @transport.setter
    def transport(self, transport: Optional[asyncio.DatagramTransport]) -> None:
        self.socket_binding.transport = transport

    def connection_made(self, transport: asyncio.BaseTransport):
        """Called when a connection is made."""

        # Note: asyncio datagram transports do not inherit from asyncio.DatagramTransport, so
        # an isinstance assertion would fail here even though they implement the same interface.
        assert self.transport is None
        try:
            self.transport = transport # type: ignore[assignment]
            self.datagram_socket.connection_made(self.socket_binding)
        except BaseException as e:
            self.datagram_socket.set_final_exception(e)
            raise

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        """Called when some datagram is received."""
        try:
            self.datagram_socket.datagram_received(self.socket_binding, addr, data)
        except Exception as e:
            logger.warning(f"Error processing datagram from {addr} on {self.socket_binding}, raw=[{data.hex()}]: {e}")

    def error_received(self, exc: Exception):
        """Called when a send or receive operation raises an OSError.

        (Other than BlockingIOError or InterruptedError.)
        """
        self.datagram_socket.error_received(self.socket_binding, exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        """Called when the connection is lost or closed."""
        try:
            self.datagram_socket.connection_lost(self.socket_binding, exc)
        except BaseException as e:
            self.datagram_socket.set_final_exception(e)
            raise
        self.transport = None


class DatagramSocket(AsyncContextManager['DatagramSocket'], ABC):
    """
    An abstract async UDP endpoint that can:

      1. Bind one or more low-level UDP sockets
      2. Receive raw datagrams from remote nodes and hand them to datagram_received()
      3. Send raw datagrams to a remote broadcast or unicast address

      Subclasses must implement add_socket_bindings() and datagram_received().
    """

    socket_bindings: List[DatagramSocketBinding]
    """A list of DatagramSocketBinding instances, one for each low-level socket that is in use."""

    final_result: Future[None]
    """A future that is set when the datagram socket is stopped."""

    def __init__(self):
        self.final_result = asyncio.get_running_loop().create_future()
        self.socket_bindings = []

    async def add_socket_binding(self, socket_binding: DatagramSocketBinding) -> None:
        if socket_binding.index >= 0:
            raise TransportError(f"Attempt to reattach DatagramSocketBinding: {socket_binding}")
        i = len(self.socket_bindings)
        self.socket_bindings.append(socket_binding)
        await socket_binding.attach_to_datagram_socket(self, i)
        logger.debug(f"Added socket binding {i}: {socket_binding}")

    @abstractmethod
    async def add_socket_bindings(self) -> None:
        """Abstract method that creates and binds the sockets that will be used to receive
           and send datagrams, and adds them with self.add_socket_binding().
           Must be overridden by subclasses."""
        raise NotImplementedError()

    @abstractmethod
    def datagram_received(self, socket_binding: DatagramSocketBinding, addr: HostAndPort, data: bytes) -> None:
        """Called when some datagram is received. Must be overridden by subclasses."""
        raise NotImplementedError()

    async def finish_start(self) -> None:
        """Called after the socket is up and running.  Subclasses can override to do additional
           initialization."""
        pass

    @property
    def is_started(self) -> bool:
        return len(self.socket_bindings) > 0 and not self.final_result.done()

    async def start(self) -> None:
        try:
            loop = asyncio.get_running_loop()
            try:
                await self.add_socket_bindings()
            except OSError as e:
                raise TransportError(f"Unable to bind datagram socket: {e}") from e
            if len(self.socket_bindings) == 0:
                raise TransportError("No datagram sockets were added to DatagramSocket")

            for socket_binding in self.socket_bindings:
                untyped_transport, protocol = await loop.create_datagram_endpoint(
                    lambda: _DatagramSocketProtocol(socket_binding),
                    sock=socket_binding.sock
                  )
                # Note: asyncio datagram transports do not inherit from asyncio.DatagramTransport;
                # the following makes mypy happy.
                transport: asyncio.DatagramTransport = untyped_transport # type: ignore[assignment]
                assert isinstance(protocol, _DatagramSocketProtocol)
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
        """Stops the DatagramSocket."""
        self.set_final_result()

    async def wait_for_dependents_done(self) -> None:
        """Called after final_result has been awaited.  Subclasses can override to do additional
           cleanup."""
        pass

    async def wait_for_done(self) -> None:
        try:
            await self.final_result
        finally:
            await self.wait_for_dependents_done()

    async def stop_and_wait(self) -> None:
        await self.stop()
        await self.wait_for_done()

    def connection_made(self, socket_binding: DatagramSocketBinding) -> None:
        """Called when a connection is made."""
        logger.debug(f"Connection made: {socket_binding}")

    def error_received(self, socket_binding: DatagramSocketBinding, exc: Exception) -> None:
        """Called when a send or receive operation raises an OSError.

        (Other than BlockingIOError or InterruptedError.) UDP errors such as ICMP port-unreachable
        are reported here; they do not end the socket.
        """
        logger.info(f"Error received from transport {socket_binding}: {exc}")

    def connection_lost(self, socket_binding: DatagramSocketBinding, exc: Optional[Exception]) -> None:
        """Called when the connection is lost or closed."""
        logger.debug(f"Connection to transport lost on {socket_binding}, exc={exc}")
        if exc is None:
            self.set_final_result()
        else:
            self.set_final_exception(exc)

    def on_final_result(self, exc: Optional[BaseException]) -> None:
        """Called once, when the socket is stopped (exc is None) or fails. Subclasses can override
           to release dependent resources."""
        pass

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
        if not self.final_result.done():
            logger.debug(f"{self}: Setting final exception: {exc}")
            self.final_result.set_exception(exc)
            self._close_all_transports()
            self._close_all_socks()
            self.on_final_result(exc)

    def set_final_result(self) -> None:
        if not self.final_result.done():
            logger.debug(f"{self}: Setting final result to success")
            self.final_result.set_result(None)
            self._close_all_transports()
            self._close_all_socks()
            self.on_final_result(None)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        if exc is None:
            self.set_final_result()
        else:
            self.set_final_exception(exc)
        try:
            # ensure that final_result has been awaited
            await self.wait_for_done()
        except BaseException:
            pass
        return False
