#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Package broadlink_rm_protocol implements the local UDP protocol of Broadlink RM
family IR/RF blasters (RM2, RM3 Mini, RM Pro, RM4 and related models).

Devices are found by broadcasting a hello datagram to port 80 of the local network;
each device answers with its MAC address and a 16-bit device type code. A client
then authenticates with the device, which hands out a session key and session id,
and sends AES-128-CBC encrypted commands: transmit a learned IR/RF code, enter
learning mode, fetch a learned code, read the temperature and humidity sensor, and,
on RF-capable models, sweep for the frequency of an RF remote.

The protocol is not publicly documented by Broadlink, but it has been
reverse-engineered by the home automation community.
"""

from .version import __version__

from .internal_types import Jsonable, JsonableDict

from .exceptions import (
    BroadlinkError,
    DeviceClassificationError,
    UnsupportedDeviceError,
    UnknownDeviceTypeError,
    UnsupportedCommandError,
    MalformedResponseError,
    DeviceReportedError,
    RequestTimeoutError,
    TransportError,
  )

from .device_types import (
    DeviceClass,
    DeviceClassification,
    ProtocolHeaders,
    classify_device_type,
    get_device_classification,
    get_model_name,
    get_protocol_headers,
  )
from .packet import encode_packet, decode_packet, DecodedPacket
from .responses import (
    DeviceEvent,
    TemperatureEvent,
    TemperatureHumidityEvent,
    RawDataEvent,
    RFFrequencyFoundEvent,
    RFSweepResultEvent,
    decode_response_payload,
  )
from .subscriber import Publisher, Subscriber
from .datagram_socket import DatagramSocket, DatagramSocketBinding
from .session import (
    DeviceSession,
    DeviceIdentity,
    DeviceResponse,
    SessionState,
    SessionStatus,
    RFExtension,
  )
from .command_queue import CommandQueue
from .discovery import BroadlinkDiscovery, DiscoveredDeviceInfo, discover
from .util import checksum, mac_to_str, parse_mac
from .constants import DISCOVERY_PORT, DEFAULT_DISCOVERY_WAIT_TIME, DEFAULT_RESPONSE_TIMEOUT

__all__ = [
    '__version__',
    'Jsonable', 'JsonableDict',
    'BroadlinkError', 'DeviceClassificationError', 'UnsupportedDeviceError', 'UnknownDeviceTypeError',
    'UnsupportedCommandError', 'MalformedResponseError', 'DeviceReportedError', 'RequestTimeoutError',
    'TransportError',
    'DeviceClass', 'DeviceClassification', 'ProtocolHeaders',
    'classify_device_type', 'get_device_classification', 'get_model_name', 'get_protocol_headers',
    'encode_packet', 'decode_packet', 'DecodedPacket',
    'DeviceEvent', 'TemperatureEvent', 'TemperatureHumidityEvent', 'RawDataEvent',
    'RFFrequencyFoundEvent', 'RFSweepResultEvent', 'decode_response_payload',
    'Publisher', 'Subscriber',
    'DatagramSocket', 'DatagramSocketBinding',
    'DeviceSession', 'DeviceIdentity', 'DeviceResponse', 'SessionState', 'SessionStatus', 'RFExtension',
    'CommandQueue',
    'BroadlinkDiscovery', 'DiscoveredDeviceInfo', 'discover',
    'checksum', 'mac_to_str', 'parse_mac',
    'DISCOVERY_PORT', 'DEFAULT_DISCOVERY_WAIT_TIME', 'DEFAULT_RESPONSE_TIMEOUT',
]
