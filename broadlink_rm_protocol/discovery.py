#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
BroadlinkDiscovery -- A discovery client that can:

  1. Broadcast a hello datagram to 255.255.255.255:80 from each local IPv4 interface
  2. Receive and decode the discovery responses of Broadlink devices on the LAN
  3. Classify each responding device, ignoring those that are not IR/RF blasters
  4. Optionally create and authenticate a DeviceSession for each supported device
"""

from __future__ import annotations

import asyncio
import socket
import sys
import struct
import time
import datetime

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    DISCOVERY_PORT,
    BROADCAST_ADDRESS,
    DISCOVERY_PACKET_LENGTH,
    MIN_DISCOVERY_RESPONSE_LENGTH,
    DISCOVERY_MARKER,
    DEFAULT_DISCOVERY_WAIT_TIME,
    DEFAULT_RESPONSE_TIMEOUT,
  )
from .exceptions import MalformedResponseError, DeviceClassificationError
from .device_types import DeviceClassification, get_device_classification
from .datagram_socket import DatagramSocket, DatagramSocketBinding
from .subscriber import Publisher
from .session import DeviceSession
from .util import checksum, get_local_ip_addresses, mac_to_str, MAC_LENGTH

def build_hello_packet(local_ip: str, port: int, now: Optional[datetime.datetime]=None) -> bytes:
    """Builds the 0x30-byte hello datagram that asks devices to announce themselves.

    Parameters:
        local_ip:  The dotted-quad IPv4 address of the sending interface.
        port:      The local port the sender is bound to; devices reply to it.
        now:       The local time to encode. Defaults to the current time. A naive
                   datetime is taken to be in the host's local timezone.
    """
    if now is None:
        now = datetime.datetime.now()
    offset = now.utcoffset() if now.tzinfo is not None else now.astimezone().utcoffset()
    timezone = 0 if offset is None else int(offset.total_seconds() / 3600)

    packet = bytearray(DISCOVERY_PACKET_LENGTH)
    if timezone < 0:
        packet[0x08] = (0xff + timezone - 1) & 0xff
        packet[0x09:0x0c] = b'\xff\xff\xff'
    else:
        packet[0x08] = timezone
    struct.pack_into('<H', packet, 0x0c, now.year)
    packet[0x0e] = now.minute
    packet[0x0f] = now.hour
    packet[0x10] = now.year % 100
    packet[0x11] = now.isoweekday() % 7     # Sunday == 0
    packet[0x12] = now.day
    packet[0x13] = now.month - 1            # January == 0
    packet[0x18:0x1c] = socket.inet_aton(local_ip)
    struct.pack_into('<H', packet, 0x1c, port)
    packet[0x26] = DISCOVERY_MARKER
    struct.pack_into('<H', packet, 0x20, checksum(packet))
    return bytes(packet)

def parse_discovery_response(data: bytes) -> Tuple[bytes, int]:
    """Extracts (mac, device_type) from a discovery response.

    The MAC is carried reversed at 0x3a-0x3f; it is returned in canonical order.

    Raises MalformedResponseError if the datagram is too short to hold both fields.
    """
    if len(data) < MIN_DISCOVERY_RESPONSE_LENGTH:
        raise MalformedResponseError(f"Discovery response too short: {len(data)} bytes")
    mac = bytes(reversed(data[0x3a:0x3a + MAC_LENGTH]))
    device_type, = struct.unpack_from('<H', data, 0x34)
    return (mac, device_type)

class DiscoveredDeviceInfo:
    socket_binding: Optional[DatagramSocketBinding]
    """The socket binding on which the response was received, or None for manually added devices"""

    src_addr: HostAndPort
    """The device's (address, port)"""

    mac: bytes
    """The device MAC address, canonical order"""

    device_type: int
    """The 16-bit device type code"""

    classification: Optional[DeviceClassification]
    """The device's classification, or None if it cannot be driven by this package"""

    rejection: Optional[DeviceClassificationError]
    """The reason the device cannot be driven, if it cannot"""

    session: Optional[DeviceSession] = None
    """The session created for the device, if sessions are being created"""

    monotonic_time: float
    """The local time (in seconds) since an arbitrary point in the past at which
       the response was received, as returned by time.monotonic()."""

    utc_time: datetime.datetime
    """The UTC time at which the response was received."""

    def __init__(
            self,
            socket_binding: Optional[DatagramSocketBinding],
            src_addr: HostAndPort,
            mac: bytes,
            device_type: int,
          ) -> None:
        self.socket_binding = socket_binding
        self.src_addr = src_addr
        self.mac = mac
        self.device_type = device_type
        try:
            self.classification = get_device_classification(device_type)
            self.rejection = None
        except DeviceClassificationError as e:
            self.classification = None
            self.rejection = e
        self.monotonic_time = time.monotonic()
        self.utc_time = datetime.datetime.now(datetime.timezone.utc)

    @property
    def mac_str(self) -> str:
        return mac_to_str(self.mac)

    @property
    def is_supported(self) -> bool:
        return self.classification is not None

    @property
    def model(self) -> Optional[str]:
        return None if self.classification is None else self.classification.model

    def __str__(self) -> str:
        return f"DiscoveredDeviceInfo(mac={self.mac_str}, addr={self.src_addr[0]}:{self.src_addr[1]}, device_type=0x{self.device_type:04x}, model={self.model})"

    def __repr__(self) -> str:
        return str(self)

    def to_jsonable(self) -> JsonableDict:
        return {
            "address": self.src_addr[0],
            "port": self.src_addr[1],
            "mac": self.mac_str,
            "device_type": self.device_type,
            "model": self.model,
            "device_class": None if self.classification is None else self.classification.device_class.value,
            "utc_time": self.utc_time.isoformat(),
        }

class BroadlinkDiscovery(DatagramSocket, Publisher[DiscoveredDeviceInfo]):
    """
    A Broadlink discovery client. Every device that responds is announced once, by MAC, to
    subscribers. If create_sessions is True, a DeviceSession is created and authenticated in
    the background for each supported device; the sessions are stopped with the discovery client.

    Usage:
        async with BroadlinkDiscovery() as discovery:
            for info in await discovery.discover():
                print(info)
    """

    discovery_wait_time: float
    """The amount of time (in seconds) discover() waits for responses to come in."""

    broadcast_address: str
    """The address hello datagrams are sent to."""

    discovery_port: int
    """The port hello datagrams are sent to."""

    bind_addresses: List[str]
    """The local IP addresses to bind to. If None, all local IPv4 addresses will be used."""

    include_loopback: bool = False
    """If True, loopback addresses will be included in the list of local IP addresses to bind to."""

    create_sessions: bool
    """If True, a DeviceSession is created for each supported device."""

    response_timeout: float
    """The response timeout given to created sessions."""

    discovered: Dict[str, DiscoveredDeviceInfo]
    """Every device that has responded, including those that cannot be driven, by MAC hex string."""

    devices: Dict[str, DeviceSession]
    """Sessions with supported devices, by MAC hex string."""

    _session_tasks: Set[asyncio.Task[None]]

    def __init__(
            self,
            discovery_wait_time: float=DEFAULT_DISCOVERY_WAIT_TIME,
            broadcast_address: str=BROADCAST_ADDRESS,
            discovery_port: int=DISCOVERY_PORT,
            bind_addresses: Optional[Iterable[str]]=None,
            include_loopback: bool=False,
            create_sessions: bool=True,
            response_timeout: float=DEFAULT_RESPONSE_TIMEOUT,
          ) -> None:
        DatagramSocket.__init__(self)
        Publisher.__init__(self)
        self.discovery_wait_time = discovery_wait_time
        self.broadcast_address = broadcast_address
        self.discovery_port = discovery_port
        self.include_loopback = include_loopback
        if bind_addresses is None:
            bind_addresses = get_local_ip_addresses(socket.AF_INET, include_loopback=self.include_loopback)
        self.bind_addresses = list(bind_addresses)
        self.create_sessions = create_sessions
        self.response_timeout = response_timeout
        self.discovered = {}
        self.devices = {}
        self._session_tasks = set()

    def __str__(self) -> str:
        return f"BroadlinkDiscovery(bind_addresses={self.bind_addresses})"

    #@override
    async def add_socket_bindings(self) -> None:
        logger.debug(f"Creating socket bindings to {self.bind_addresses}")
        for bind_address in self.bind_addresses:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                if sys.platform not in ( 'win32', 'cygwin' ):
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
                sock.bind((bind_address, 0))
            except BaseException:
                sock.close()
                raise
            socket_binding = DatagramSocketBinding(sock, unicast_addr=sock.getsockname())
            await self.add_socket_binding(socket_binding)

    #@override
    async def finish_start(self) -> None:
        self.send_hello()

    def send_hello(self) -> None:
        """Broadcasts a hello datagram from every bound interface."""
        for socket_binding in self.socket_bindings:
            assert socket_binding.unicast_addr is not None
            local_ip, local_port = socket_binding.unicast_addr[:2]
            logger.info(f"Listening for Broadlink devices on {local_ip}:{local_port} (UDP)")
            packet = build_hello_packet(local_ip, local_port)
            socket_binding.sendto(packet, (self.broadcast_address, self.discovery_port))

    #@override
    def datagram_received(self, socket_binding: DatagramSocketBinding, addr: HostAndPort, data: bytes) -> None:
        logger.debug(f"Received discovery response from {addr} on {socket_binding}")
        try:
            mac, device_type = parse_discovery_response(data)
        except MalformedResponseError as e:
            logger.warning(f"Discarding response from {addr}: {e}")
            return
        self._add_discovered(DiscoveredDeviceInfo(socket_binding, addr, mac, device_type))

    def add_device(self, host: str, mac: bytes, device_type: int, port: int=DISCOVERY_PORT) -> DiscoveredDeviceInfo:
        """Registers a device that is known without discovery (e.g., on another subnet).

        Returns the existing record if the MAC has already been seen.
        """
        if len(mac) != MAC_LENGTH:
            raise ValueError(f"A MAC address must be {MAC_LENGTH} bytes, got {len(mac)}")
        existing = self.discovered.get(mac_to_str(mac))
        if existing is not None:
            return existing
        info = DiscoveredDeviceInfo(None, (host, port), bytes(mac), device_type)
        self._add_discovered(info)
        return info

    def _add_discovered(self, info: DiscoveredDeviceInfo) -> None:
        key = info.mac_str
        if key in self.discovered:
            return
        self.discovered[key] = info
        if info.classification is None:
            assert info.rejection is not None
            logger.info(f"Ignoring Broadlink device at {info.src_addr[0]} ({key}): {info.rejection}")
        else:
            logger.info(
                f"Discovered Broadlink device at {info.src_addr[0]} ({key}) with device type "
                f"0x{info.device_type:04x} ({info.classification.model})"
              )
            if self.create_sessions and not self.final_result.done():
                info.session = self._create_session(info)
        self.publish(info)

    def _create_session(self, info: DiscoveredDeviceInfo) -> DeviceSession:
        session = DeviceSession(
            info.src_addr[0],
            info.mac,
            info.device_type,
            port=info.src_addr[1],
            response_timeout=self.response_timeout,
          )
        self.devices[info.mac_str] = session
        task = asyncio.ensure_future(self._connect_session(session))
        self._session_tasks.add(task)
        task.add_done_callback(self._session_tasks.discard)
        return session

    async def _connect_session(self, session: DeviceSession) -> None:
        try:
            await session.start()
            await session.authenticate()
        except Exception as e:
            logger.warning(f"Unable to authenticate with {session}: {e}")

    async def discover(self, wait_time: Optional[float]=None) -> List[DiscoveredDeviceInfo]:
        """Broadcasts a hello, waits for responses to come in, and returns every device seen so far."""
        if wait_time is None:
            wait_time = self.discovery_wait_time
        self.send_hello()
        await asyncio.sleep(wait_time)
        return list(self.discovered.values())

    async def iter_discovered(self, wait_time: Optional[float]=None) -> AsyncIterator[DiscoveredDeviceInfo]:
        """Broadcasts a hello and yields each newly discovered device as it responds, until wait_time has elapsed.

        It is possible to break out of the loop early if desired; e.g., once the device you were looking for has responded.
        """
        if wait_time is None:
            wait_time = self.discovery_wait_time
        # subscribe before sending so no response is missed
        async with self.subscribe() as subscriber:
            self.send_hello()
            end_time = time.monotonic() + wait_time
            while True:
                remaining_time = end_time - time.monotonic()
                if remaining_time <= 0.0:
                    break
                try:
                    info = await asyncio.wait_for(subscriber.receive(), remaining_time)
                except asyncio.TimeoutError:
                    break
                if info is None:
                    break
                yield info

    #@override
    def on_final_result(self, exc: Optional[BaseException]) -> None:
        for task in list(self._session_tasks):
            task.cancel()
        for session in self.devices.values():
            session.set_final_result()
        self.end_subscribers(exc if isinstance(exc, Exception) else None)

    #@override
    async def wait_for_dependents_done(self) -> None:
        if len(self._session_tasks) > 0:
            await asyncio.gather(*self._session_tasks, return_exceptions=True)
        for session in self.devices.values():
            try:
                await session.wait_for_done()
            except Exception as e:
                logger.debug(f"{session} ended with exception: {e}")

async def discover(
        wait_time: float=DEFAULT_DISCOVERY_WAIT_TIME,
        bind_addresses: Optional[Iterable[str]]=None,
        broadcast_address: str=BROADCAST_ADDRESS,
        discovery_port: int=DISCOVERY_PORT,
      ) -> List[DiscoveredDeviceInfo]:
    """Discovers the Broadlink devices on the local network without creating sessions.

    The sessions can be created afterwards from the returned DiscoveredDeviceInfo's.
    """
    async with BroadlinkDiscovery(
            discovery_wait_time=wait_time,
            bind_addresses=bind_addresses,
            broadcast_address=broadcast_address,
            discovery_port=discovery_port,
            create_sessions=False,
          ) as discovery:
        await asyncio.sleep(wait_time)
        return list(discovery.discovered.values())
