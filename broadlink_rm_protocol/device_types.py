#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Classification of Broadlink device type codes.

Every device announces a 16-bit device type code in its discovery response. The
code decides whether the device can be driven at all, which generation of the
protocol it speaks (the rm4 generation prefixes sub-commands with a 2-byte header),
and whether it also exposes the RF (315/433MHz) command set.
"""

from __future__ import annotations

from enum import Enum
from dataclasses import dataclass

from .internal_types import *
from .constants import (
    RM4_REQUEST_HEADER,
    RM4_CODE_SENDING_HEADER,
    LEGACY_EXCEPTION_CODE_SENDING_HEADER,
  )
from .exceptions import UnsupportedDeviceError, UnknownDeviceTypeError

RM_DEVICE_TYPES: Dict[int, str] = {
    0x2737: 'Broadlink RM3 Mini',
    0x6507: 'Broadlink RM3 Mini',
    0x27c7: 'Broadlink RM3 Mini A',
    0x27c2: 'Broadlink RM3 Mini B',
    0x6508: 'Broadlink RM3 Mini D',
    0x27de: 'Broadlink RM3 Mini C',
    0x5f36: 'Broadlink RM3 Mini B',
    0x27d3: 'Broadlink RM3 Mini KR',
    0x273d: 'Broadlink RM Pro Phicomm',
    0x2712: 'Broadlink RM2',
    0x2783: 'Broadlink RM2 Home Plus',
    0x277c: 'Broadlink RM2 Home Plus GDT',
    0x278f: 'Broadlink RM Mini Shate',
    0x2221: 'Manual RM Device',
}
"""RM devices without RF support."""

RM_PLUS_DEVICE_TYPES: Dict[int, str] = {
    0x272a: 'Broadlink RM2 Pro Plus',
    0x2787: 'Broadlink RM2 Pro Plus v2',
    0x278b: 'Broadlink RM2 Pro Plus BL',
    0x2797: 'Broadlink RM2 Pro Plus HYC',
    0x27a1: 'Broadlink RM2 Pro Plus R1',
    0x27a6: 'Broadlink RM2 Pro PP',
    0x279d: 'Broadlink RM3 Pro Plus',
    0x27a9: 'Broadlink RM3 Pro Plus v2', # (model RM 3422)
    0x27c3: 'Broadlink RM3 Pro',
    0x2223: 'Manual RM Pro Device',
}
"""RM devices with RF support."""

RM4_DEVICE_TYPES: Dict[int, str] = {
    0x51da: 'Broadlink RM4 Mini',
    0x610e: 'Broadlink RM4 Mini',
    0x62bc: 'Broadlink RM4 Mini',
    0x653a: 'Broadlink RM4 Mini',
    0x6070: 'Broadlink RM4 Mini C',
    0x62be: 'Broadlink RM4 Mini C',
    0x610f: 'Broadlink RM4 Mini C',
    0x6539: 'Broadlink RM4 Mini C',
    0x520d: 'Broadlink RM4 Mini C',
    0x648d: 'Broadlink RM4 Mini S',
    0x5216: 'Broadlink RM4 Mini',
    0x520c: 'Broadlink RM4 Mini',
    0x2225: 'Manual RM4 Device',
}
"""RM4 devices without RF support."""

RM4_PLUS_DEVICE_TYPES: Dict[int, str] = {
    0x5213: 'Broadlink RM4 Pro',
    0x6026: 'Broadlink RM4 Pro',
    0x61a2: 'Broadlink RM4 Pro',
    0x649b: 'Broadlink RM4 Pro',
    0x653c: 'Broadlink RM4 Pro',
    0x520b: 'Broadlink RM4 Pro',
    0x6184: 'Broadlink RM4C Pro',
    0x2227: 'Manual RM4 Pro Device',
}
"""RM4 devices with RF support."""

UNSUPPORTED_DEVICE_TYPES: Dict[int, str] = {
    0x0000: 'Broadlink SP1',
    0x2711: 'Broadlink SP2',
    0x2719: 'Honeywell SP2',
    0x7919: 'Honeywell SP2',
    0x271a: 'Honeywell SP2',
    0x791a: 'Honeywell SP2',
    0x2733: 'OEM Branded SP Mini',
    0x273e: 'OEM Branded SP Mini',
    0x2720: 'Broadlink SP Mini',
    0x7d07: 'Broadlink SP Mini',
    0x753e: 'Broadlink SP 3',
    0x2728: 'Broadlink SPMini 2',
    0x2736: 'Broadlink SPMini Plus',
    0x2714: 'Broadlink A1',
    0x4eb5: 'Broadlink MP1',
    0x2722: 'Broadlink S1 (SmartOne Alarm Kit)',
    0x4e4d: 'Dooya DT360E (DOOYA_CURTAIN_V2) or Hysen Heating Controller',
    0x4ead: 'Dooya DT360E (DOOYA_CURTAIN_V2) or Hysen Heating Controller',
    0x947a: 'BroadLink Outlet',
}
"""Known devices that are not IR/RF blasters."""

OEM_SP_MINI_2_RANGE = range(0x7530, 0x7918 + 1)
"""Device type codes reserved for OEM branded SPMini2 smart plugs."""

LEGACY_HEADER_EXCEPTIONS = frozenset([0x5f36, 0x6508])
"""Legacy (rm table) devices that use the rm4 request header and a D0 code-sending header."""

class DeviceClass(Enum):
    """The capability class of a device type code."""
    UNSUPPORTED = 'unsupported'
    RM = 'plain-rm'
    RM_PLUS = 'rm-plus'
    RM4 = 'rm4'
    RM4_PLUS = 'rm4-plus'
    UNKNOWN = 'unknown'

    @property
    def is_supported(self) -> bool:
        return self not in (DeviceClass.UNSUPPORTED, DeviceClass.UNKNOWN)

    @property
    def is_rf_capable(self) -> bool:
        return self in (DeviceClass.RM_PLUS, DeviceClass.RM4_PLUS)

    @property
    def is_rm4(self) -> bool:
        return self in (DeviceClass.RM4, DeviceClass.RM4_PLUS)

_DEVICE_TABLES: List[Tuple[DeviceClass, Dict[int, str]]] = [
    (DeviceClass.RM, RM_DEVICE_TYPES),
    (DeviceClass.RM_PLUS, RM_PLUS_DEVICE_TYPES),
    (DeviceClass.RM4, RM4_DEVICE_TYPES),
    (DeviceClass.RM4_PLUS, RM4_PLUS_DEVICE_TYPES),
]

@dataclass(frozen=True)
class ProtocolHeaders:
    """The sub-command prefixes a device generation expects."""

    request_header: bytes
    """Prefix for query sub-commands (check data, learning, temperature, RF sweep...)"""

    code_sending_header: bytes
    """Prefix for the send-data sub-command"""

LEGACY_HEADERS = ProtocolHeaders(b'', b'')
RM4_HEADERS = ProtocolHeaders(RM4_REQUEST_HEADER, RM4_CODE_SENDING_HEADER)
LEGACY_EXCEPTION_HEADERS = ProtocolHeaders(RM4_REQUEST_HEADER, LEGACY_EXCEPTION_CODE_SENDING_HEADER)

@dataclass(frozen=True)
class DeviceClassification:
    """The result of classifying a supported device type code."""

    device_type: int
    device_class: DeviceClass
    model: str
    headers: ProtocolHeaders

    @property
    def is_rf_capable(self) -> bool:
        return self.device_class.is_rf_capable

    @property
    def is_rm4(self) -> bool:
        return self.device_class.is_rm4

def classify_device_type(device_type: int) -> DeviceClass:
    """Maps a 16-bit device type code to its DeviceClass.

    Unsupported codes (including the OEM SPMini2 range) are checked first; otherwise
    the first of the rm, rm-plus, rm4, rm4-plus tables that contains the code wins.
    Codes found nowhere are UNKNOWN.
    """
    if device_type in UNSUPPORTED_DEVICE_TYPES or device_type in OEM_SP_MINI_2_RANGE:
        return DeviceClass.UNSUPPORTED
    for device_class, table in _DEVICE_TABLES:
        if device_type in table:
            return device_class
    return DeviceClass.UNKNOWN

def get_model_name(device_type: int) -> Optional[str]:
    """Returns the human-readable model name for a device type code, if known."""
    for _, table in _DEVICE_TABLES:
        if device_type in table:
            return table[device_type]
    if device_type in UNSUPPORTED_DEVICE_TYPES:
        return UNSUPPORTED_DEVICE_TYPES[device_type]
    if device_type in OEM_SP_MINI_2_RANGE:
        return 'OEM Branded SPMini2'
    return None

def get_protocol_headers(device_type: int, device_class: Optional[DeviceClass]=None) -> ProtocolHeaders:
    """Returns the sub-command headers for a device type code."""
    if device_type in LEGACY_HEADER_EXCEPTIONS:
        return LEGACY_EXCEPTION_HEADERS
    if device_class is None:
        device_class = classify_device_type(device_type)
    return RM4_HEADERS if device_class.is_rm4 else LEGACY_HEADERS

def get_device_classification(device_type: int) -> DeviceClassification:
    """Classifies a device type code that a session can be constructed for.

    Raises:
        UnsupportedDeviceError: the code belongs to a known non-blaster device.
        UnknownDeviceTypeError: the code is not in any device table.
    """
    device_class = classify_device_type(device_type)
    if device_class == DeviceClass.UNSUPPORTED:
        raise UnsupportedDeviceError(
            device_type,
            f"Device type 0x{device_type:04x} ({get_model_name(device_type)}) does not support IR or RF"
          )
    if device_class == DeviceClass.UNKNOWN:
        raise UnknownDeviceTypeError(device_type, f"Unknown Broadlink device type 0x{device_type:04x}")
    model = get_model_name(device_type)
    assert model is not None
    return DeviceClassification(
        device_type=device_type,
        device_class=device_class,
        model=model,
        headers=get_protocol_headers(device_type, device_class),
      )
