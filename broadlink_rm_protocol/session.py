#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
DeviceSession -- A client session with a single Broadlink RM device that can:

  1. Perform the authentication handshake that negotiates a session key and session id
  2. Send encrypted commands (send IR/RF code, learning mode, temperature, RF sweep...)
  3. Correlate responses with outstanding requests by request id, with a per-request deadline
  4. Publish telemetry decoded from data replies to any number of async subscribers

  Several requests may be in flight at once; responses are matched purely by request id.
  All bookkeeping (the pending request table, the session key and id) is touched only
  from the event loop, so a handshake reply can never replace the key while a request
  is being encoded, and a response and a deadline cannot both complete the same request.

  Usage:
      async with DeviceSession("192.168.1.32", parse_mac("ec:0b:ae:8c:43:f1"), 0x5213) as session:
          await session.authenticate()
          await session.send_data(ir_code)
          response = await session.check_temperature()
          print(response.event)
"""

from __future__ import annotations

import asyncio
from asyncio import Future
import random
import socket
import time
from dataclasses import dataclass
from enum import Enum

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    DEFAULT_KEY,
    DEFAULT_IV,
    DEFAULT_SESSION_ID,
    DEFAULT_RESPONSE_TIMEOUT,
    DISCOVERY_PORT,
    REQUEST_ID_MASK,
    CMD_AUTHENTICATE,
    CMD_COMMAND,
    ACK_HANDSHAKE,
    ACK_DATA,
    ACK_DATA_ALT,
    ACK_PLAIN,
    SUBCMD_SEND_DATA,
    SUBCMD_ENTER_LEARNING,
    SUBCMD_CHECK_DATA,
    SUBCMD_CHECK_TEMPERATURE,
    SUBCMD_CHECK_TEMPERATURE_RM4,
    SUBCMD_ENTER_RF_SWEEP,
    SUBCMD_CHECK_RF_DATA,
    SUBCMD_CHECK_RF_DATA_2,
    SUBCMD_CANCEL_LEARNING,
  )
from .exceptions import (
    BroadlinkError,
    UnsupportedCommandError,
    MalformedResponseError,
    DeviceReportedError,
    RequestTimeoutError,
    TransportError,
  )
from .device_types import DeviceClassification, ProtocolHeaders, get_device_classification
from .packet import encode_packet, decode_packet, build_auth_payload, DecodedPacket
from .responses import DeviceEvent, decode_response_payload, strip_request_header
from .datagram_socket import DatagramSocket, DatagramSocketBinding
from .subscriber import Publisher
from .command_queue import CommandQueue
from .util import mac_to_str, MAC_LENGTH

@dataclass(frozen=True)
class DeviceIdentity:
    """The identity of a discovered device. Immutable after discovery."""

    mac: bytes
    """The MAC address, canonical byte order"""

    device_type: int
    """The 16-bit device type code"""

    classification: DeviceClassification
    """The capability class and protocol header variant derived from device_type"""

    @classmethod
    def from_device_type(cls, mac: bytes, device_type: int) -> DeviceIdentity:
        """Builds an identity, classifying the device type.

        Raises UnsupportedDeviceError or UnknownDeviceTypeError for device types that
        cannot be driven.
        """
        if len(mac) != MAC_LENGTH:
            raise ValueError(f"A MAC address must be {MAC_LENGTH} bytes, got {len(mac)}")
        return cls(bytes(mac), device_type, get_device_classification(device_type))

    @property
    def mac_str(self) -> str:
        return mac_to_str(self.mac)

    @property
    def headers(self) -> ProtocolHeaders:
        return self.classification.headers

    @property
    def is_rf_capable(self) -> bool:
        return self.classification.is_rf_capable

    @property
    def is_rm4(self) -> bool:
        return self.classification.is_rm4

class SessionState:
    """The mutable cryptographic state of one session. Owned exclusively by its DeviceSession."""

    key: bytes
    """The AES key currently in effect. Starts as DEFAULT_KEY; replaced by the handshake."""

    iv: bytes
    """The AES initialization vector. Fixed for the lifetime of the protocol."""

    session_id: bytes
    """The 4-byte session id currently in effect. Starts as zeros; assigned by the device."""

    counter: int
    """The next request id to assign (16 bits, wraps at 0xffff)."""

    def __init__(self, initial_counter: Optional[int]=None):
        self.key = DEFAULT_KEY
        self.iv = DEFAULT_IV
        self.session_id = DEFAULT_SESSION_ID
        if initial_counter is None:
            initial_counter = random.randrange(REQUEST_ID_MASK + 1)
        self.counter = initial_counter & REQUEST_ID_MASK

    def next_request_id(self) -> int:
        """Returns the current counter value and advances the counter, wrapping 0xffff -> 0x0000."""
        request_id = self.counter
        self.counter = (self.counter + 1) & REQUEST_ID_MASK
        return request_id

    def rotate(self, key: bytes, session_id: bytes) -> None:
        """Replaces the session key and session id with the values negotiated by the handshake."""
        if len(key) != 16:
            raise ValueError(f"A session key must be 16 bytes, got {len(key)}")
        if len(session_id) != 4:
            raise ValueError(f"A session id must be 4 bytes, got {len(session_id)}")
        self.key = bytes(key)
        self.session_id = bytes(session_id)

class SessionStatus(Enum):
    UNAUTHENTICATED = 'unauthenticated'
    AUTHENTICATING = 'authenticating'
    READY = 'ready'

class DeviceResponse:
    """The completed result of a command."""

    ack: int
    """The ack tag of the response (0xe9, 0xee, 0xef or 0x72)"""

    request_id: int
    """The request id the response was correlated with"""

    payload: bytes
    """The decrypted payload (with the request header echo removed for data replies);
       empty for plain acknowledgements"""

    event: Optional[DeviceEvent]
    """The typed event decoded from a data reply, if any"""

    def __init__(self, ack: int, request_id: int, payload: bytes, event: Optional[DeviceEvent]=None):
        self.ack = ack
        self.request_id = request_id
        self.payload = payload
        self.event = event

    def __str__(self) -> str:
        return f"DeviceResponse(ack=0x{self.ack:02x}, request_id={self.request_id}, payload={self.payload.hex()}, event={self.event})"

    def __repr__(self) -> str:
        return str(self)

class PendingRequest:
    """An outstanding request awaiting its response or its deadline."""

    request_id: int
    command: int
    future: Future[DeviceResponse]
    timeout: float
    start_time: float
    timer: Optional[asyncio.TimerHandle] = None

    def __init__(self, request_id: int, command: int, future: Future[DeviceResponse], timeout: float):
        self.request_id = request_id
        self.command = command
        self.future = future
        self.timeout = timeout
        self.start_time = time.monotonic()

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.start_time) * 1000.0

    def __str__(self) -> str:
        return f"PendingRequest(request_id={self.request_id}, command=0x{self.command:02x})"

class DeviceSession(DatagramSocket, Publisher[DeviceEvent]):
    """
    A session with one Broadlink RM device over its own locally bound UDP socket.

    States: UNAUTHENTICATED -> AUTHENTICATING -> READY. Commands may be issued in any state;
    by protocol convention authenticate() is awaited first. A session has no closed state of
    its own; stopping it releases the socket and fails any requests still in flight.
    """

    host: HostAndPort
    """The device's (address, port)"""

    identity: DeviceIdentity
    """The device's MAC, device type and classification"""

    state: SessionState
    """The session key, IV, session id and request counter"""

    status: SessionStatus = SessionStatus.UNAUTHENTICATED

    response_timeout: float
    """The deadline (in seconds) applied to each request unless overridden"""

    bind_address: str
    """The local IP address to bind to. By default, all interfaces."""

    rf: Optional[RFExtension] = None
    """The RF command set; None unless the device is RF-capable."""

    ready_event: asyncio.Event
    """Set when a handshake reply has installed the negotiated session key."""

    _pending: Dict[int, PendingRequest]
    _command_queue: Optional[CommandQueue] = None

    def __init__(
            self,
            host: str,
            mac: bytes,
            device_type: int,
            port: int=DISCOVERY_PORT,
            response_timeout: float=DEFAULT_RESPONSE_TIMEOUT,
            bind_address: str='0.0.0.0',
            initial_counter: Optional[int]=None,
          ) -> None:
        """Create a session with a device. Must be called from a running event loop.

        Raises UnsupportedDeviceError or UnknownDeviceTypeError if device_type cannot be driven.
        """
        identity = DeviceIdentity.from_device_type(mac, device_type)
        DatagramSocket.__init__(self)
        Publisher.__init__(self)
        self.host = (host, port)
        self.identity = identity
        self.state = SessionState(initial_counter)
        self.response_timeout = response_timeout
        self.bind_address = bind_address
        self.ready_event = asyncio.Event()
        self._pending = {}
        if identity.is_rf_capable:
            self.rf = RFExtension(self)

    def __str__(self) -> str:
        return f"DeviceSession({self.identity.mac_str}@{self.host[0]}:{self.host[1]})"

    def __repr__(self) -> str:
        return str(self)

    @property
    def mac_str(self) -> str:
        return self.identity.mac_str

    @property
    def device_type(self) -> int:
        return self.identity.device_type

    @property
    def pending_request_ids(self) -> List[int]:
        return list(self._pending.keys())

    #@override
    async def add_socket_bindings(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((self.bind_address, 0))
        except BaseException:
            sock.close()
            raise
        await self.add_socket_binding(DatagramSocketBinding(sock))
        logger.debug(f"({self.mac_str}) Session socket listening on {sock.getsockname()}")

    # ======================= request multiplexing

    def _allocate_request_id(self) -> int:
        for _ in range(REQUEST_ID_MASK + 1):
            request_id = self.state.next_request_id()
            if request_id not in self._pending:
                return request_id
            logger.debug(f"({self.mac_str}) Request id {request_id} is still pending; skipping it")
        raise BroadlinkError(f"({self.mac_str}) No free request ids")

    def _send_datagram(self, data: bytes) -> None:
        if len(self.socket_bindings) == 0:
            raise TransportError(f"{self} has not been started")
        self.socket_bindings[0].sendto(data, self.host)

    def submit_command(self, command: int, payload: bytes, timeout: Optional[float]=None) -> Future[DeviceResponse]:
        """Encodes and sends a command immediately, returning a future for its response.

        The future completes with a DeviceResponse when the matching response arrives, or fails with
        RequestTimeoutError after the deadline, or DeviceReportedError if the device reports an error.

        Raises TransportError if the datagram cannot be sent.
        """
        loop = asyncio.get_running_loop()
        if timeout is None:
            timeout = self.response_timeout
        request_id = self._allocate_request_id()
        packet = encode_packet(
            command,
            payload,
            self.identity.mac,
            request_id,
            self.identity.device_type,
            self.state.key,
            self.state.iv,
            self.state.session_id,
          )
        future: Future[DeviceResponse] = loop.create_future()
        pending = PendingRequest(request_id, command, future, timeout)
        pending.timer = loop.call_later(timeout, self._expire_request, pending)
        self._pending[request_id] = pending
        future.add_done_callback(lambda _: self._discard_request(pending))
        logger.info(
            f"({self.mac_str}) Packet {request_id} with session id {self.state.session_id.hex()}, "
            f"command 0x{command:02x}, device type 0x{self.identity.device_type:04x}"
          )
        try:
            self._send_datagram(packet)
        except BaseException:
            self._discard_request(pending)
            if not future.done():
                future.cancel()
            raise
        return future

    async def send_command(self, command: int, payload: bytes, timeout: Optional[float]=None) -> DeviceResponse:
        """Sends a command and waits for its response. See submit_command()."""
        return await self.submit_command(command, payload, timeout=timeout)

    def _discard_request(self, pending: PendingRequest) -> None:
        if self._pending.get(pending.request_id) is pending:
            del self._pending[pending.request_id]
        if pending.timer is not None:
            pending.timer.cancel()

    def _expire_request(self, pending: PendingRequest) -> None:
        if self._pending.get(pending.request_id) is not pending:
            return
        del self._pending[pending.request_id]
        logger.warning(f"({self.mac_str}) No response for request {pending.request_id} within {pending.timeout} seconds")
        if not pending.future.done():
            pending.future.set_exception(RequestTimeoutError(pending.request_id, pending.timeout))

    def _complete_request(self, request_id: int, response: DeviceResponse) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            logger.debug(f"({self.mac_str}) Dropping response for request {request_id}; no request is pending")
            return
        self._discard_request(pending)
        logger.info(f"({self.mac_str}) Response received: {request_id}, time taken: {pending.elapsed_ms:.1f} ms")
        if not pending.future.done():
            pending.future.set_result(response)

    def _fail_request(self, request_id: int, exc: BaseException) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            logger.debug(f"({self.mac_str}) Dropping failure for request {request_id}; no request is pending: {exc}")
            return
        self._discard_request(pending)
        if not pending.future.done():
            pending.future.set_exception(exc)

    # ======================= inbound dispatch

    #@override
    def datagram_received(self, socket_binding: DatagramSocketBinding, addr: HostAndPort, data: bytes) -> None:
        logger.debug(f"({self.mac_str}) Received datagram from {addr}: {data.hex()}")
        self.handle_response(data)

    def handle_response(self, data: bytes) -> None:
        """Decodes a response datagram and dispatches it by ack tag."""
        try:
            packet = decode_packet(data, self.state.key, self.state.iv)
        except DeviceReportedError as e:
            logger.warning(f"({self.mac_str}) {e}")
            self._fail_request(e.request_id, e)
            return
        except MalformedResponseError as e:
            logger.warning(f"({self.mac_str}) Discarding malformed response: {e}")
            return

        ack = packet.ack
        if ack == ACK_HANDSHAKE:
            self._handle_handshake_reply(packet)
        elif ack in (ACK_DATA, ACK_DATA_ALT):
            payload = strip_request_header(packet.payload, self.identity.headers.request_header)
            logger.debug(f"({self.mac_str}) Payload received: {payload.hex()}")
            event = decode_response_payload(payload, self.identity.is_rm4)
            if event is not None:
                self.publish(event)
            self._complete_request(packet.request_id, DeviceResponse(ack, packet.request_id, payload, event))
        elif ack == ACK_PLAIN:
            logger.info(f"({self.mac_str}) Command acknowledged: {packet.request_id}")
            self._complete_request(packet.request_id, DeviceResponse(ack, packet.request_id, b''))
        else:
            logger.info(f"({self.mac_str}) Unhandled ack tag 0x{ack:02x} for request {packet.request_id}")

    def _handle_handshake_reply(self, packet: DecodedPacket) -> None:
        payload = packet.payload
        if len(payload) < 0x14:
            exc = MalformedResponseError(f"Handshake reply payload too short: {len(payload)} bytes")
            logger.warning(f"({self.mac_str}) {exc}")
            self._fail_request(packet.request_id, exc)
            return
        self.state.rotate(payload[0x04:0x14], payload[0x00:0x04])
        self.status = SessionStatus.READY
        self.ready_event.set()
        logger.info(f"({self.mac_str}) Device ready, session id {self.state.session_id.hex()}")
        self._complete_request(packet.request_id, DeviceResponse(packet.ack, packet.request_id, payload))

    # ======================= commands

    def request_payload(self, subcommand: int) -> bytes:
        """Builds a query sub-command body, prefixed with the generation's request header."""
        return self.identity.headers.request_header + bytes([subcommand])

    async def authenticate(self) -> DeviceResponse:
        """Performs the handshake. On success the session key and session id negotiated by the
           device are in effect and the session is READY."""
        self.status = SessionStatus.AUTHENTICATING
        try:
            return await self.send_command(CMD_AUTHENTICATE, build_auth_payload())
        except BaseException:
            if self.status == SessionStatus.AUTHENTICATING:
                self.status = SessionStatus.UNAUTHENTICATED
            raise

    async def wait_until_ready(self, timeout: Optional[float]=None) -> None:
        """Waits for a handshake reply to be processed."""
        await asyncio.wait_for(self.ready_event.wait(), timeout)

    async def send_data(self, data: bytes) -> DeviceResponse:
        """Transmits a raw IR/RF code."""
        payload = self.identity.headers.code_sending_header + SUBCMD_SEND_DATA + bytes(data)
        return await self.send_command(CMD_COMMAND, payload)

    async def check_data(self) -> DeviceResponse:
        """Fetches the code captured in learning mode."""
        return await self.send_command(CMD_COMMAND, self.request_payload(SUBCMD_CHECK_DATA))

    async def enter_learning(self) -> DeviceResponse:
        return await self.send_command(CMD_COMMAND, self.request_payload(SUBCMD_ENTER_LEARNING))

    async def cancel_learning(self) -> DeviceResponse:
        return await self.send_command(CMD_COMMAND, self.request_payload(SUBCMD_CANCEL_LEARNING))

    def _temperature_subcommand(self) -> int:
        return SUBCMD_CHECK_TEMPERATURE_RM4 if self.identity.is_rm4 else SUBCMD_CHECK_TEMPERATURE

    async def check_temperature(self) -> DeviceResponse:
        return await self.send_command(CMD_COMMAND, self.request_payload(self._temperature_subcommand()))

    async def check_humidity(self) -> DeviceResponse:
        # Humidity is reported alongside temperature by the same sub-command
        return await self.send_command(CMD_COMMAND, self.request_payload(self._temperature_subcommand()))

    # ======================= sequential send policy

    @property
    def command_queue(self) -> CommandQueue:
        """The FIFO queue that serializes send_data() calls for this session."""
        if self._command_queue is None:
            self._command_queue = CommandQueue(self)
        return self._command_queue

    def enqueue_data(self, data: bytes) -> Future[DeviceResponse]:
        """Queues a code for transmission after all previously queued codes have completed."""
        return self.command_queue.enqueue(data)

    # ======================= lifecycle

    #@override
    def on_final_result(self, exc: Optional[BaseException]) -> None:
        if self._command_queue is not None:
            self._command_queue.close()
        for pending in list(self._pending.values()):
            self._discard_request(pending)
            if not pending.future.done():
                pending.future.set_exception(TransportError(f"{self} was closed with request {pending.request_id} in flight"))
        self.end_subscribers(exc if isinstance(exc, Exception) else None)

    def to_jsonable(self) -> JsonableDict:
        return {
            "host": self.host[0],
            "port": self.host[1],
            "mac": self.mac_str,
            "device_type": self.identity.device_type,
            "model": self.identity.classification.model,
            "device_class": self.identity.classification.device_class.value,
            "status": self.status.value,
            "request_counter": self.state.counter,
            "pending_requests": len(self._pending),
            "queued_commands": 0 if self._command_queue is None else self._command_queue.qsize(),
        }

class RFExtension:
    """The RF (315/433MHz) command set of an RF-capable device.

    Only constructible for sessions whose classification is RF-capable; a session exposes
    it as its `rf` attribute.
    """

    session: DeviceSession

    def __init__(self, session: DeviceSession):
        if not session.identity.is_rf_capable:
            raise UnsupportedCommandError(
                f"Device type 0x{session.identity.device_type:04x} ({session.identity.classification.model}) does not support RF"
              )
        self.session = session

    async def enter_rf_sweep(self) -> DeviceResponse:
        """Starts sweeping for the frequency of an RF remote."""
        return await self.session.send_command(CMD_COMMAND, self.session.request_payload(SUBCMD_ENTER_RF_SWEEP))

    async def check_rf_data(self) -> DeviceResponse:
        """Checks whether the sweep has found a frequency."""
        return await self.session.send_command(CMD_COMMAND, self.session.request_payload(SUBCMD_CHECK_RF_DATA))

    async def check_rf_data_2(self) -> DeviceResponse:
        return await self.session.send_command(CMD_COMMAND, self.session.request_payload(SUBCMD_CHECK_RF_DATA_2))
