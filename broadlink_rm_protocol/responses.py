#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Typed events decoded from data replies.

The first byte of a (header-stripped) data reply payload identifies what the
payload carries. decode_response_payload() maps it to one of the DeviceEvent
subclasses below, or to None for tags that carry nothing of interest.
"""

from __future__ import annotations

from dataclasses import dataclass

from .internal_types import *
from .pkg_logging import logger

@dataclass(frozen=True)
class DeviceEvent:
    tag: int
    """The leading payload byte the event was decoded from."""

@dataclass(frozen=True)
class TemperatureEvent(DeviceEvent):
    temperature: float
    """Degrees Celsius"""

@dataclass(frozen=True)
class TemperatureHumidityEvent(TemperatureEvent):
    humidity: float
    """Relative humidity, percent"""

@dataclass(frozen=True)
class RawDataEvent(DeviceEvent):
    """A captured or learned IR/RF code."""
    data: bytes

@dataclass(frozen=True)
class RFFrequencyFoundEvent(DeviceEvent):
    """An RF sweep has locked on to a frequency."""
    data: bytes

@dataclass(frozen=True)
class RFSweepResultEvent(DeviceEvent):
    """Result of the second RF check (check_rf_data_2)."""
    data: bytes

PayloadHandler = Callable[[bytes, bool], Optional[DeviceEvent]]

def _temperature(payload: bytes, is_rm4: bool) -> Optional[DeviceEvent]:
    if len(payload) < 6:
        return None
    return TemperatureEvent(payload[0], (payload[4] * 10 + payload[5]) / 10.0)

def _temperature_humidity(payload: bytes, is_rm4: bool) -> Optional[DeviceEvent]:
    if len(payload) < 10:
        return None
    temperature = (payload[6] * 100 + payload[7]) / 100.0
    humidity = (payload[8] * 100 + payload[9]) / 100.0
    return TemperatureHumidityEvent(payload[0], temperature, humidity)

def _check_data(payload: bytes, is_rm4: bool) -> Optional[DeviceEvent]:
    return RawDataEvent(payload[0], payload[4:])

def _learned_data(payload: bytes, is_rm4: bool) -> Optional[DeviceEvent]:
    return RawDataEvent(payload[0], payload[6:])

def _raw_data(payload: bytes, is_rm4: bool) -> Optional[DeviceEvent]:
    return RawDataEvent(payload[0], payload)

def _rm4_rf_frequency_found(payload: bytes, is_rm4: bool) -> Optional[DeviceEvent]:
    if len(payload) < 7 or payload[6] != 0x01:
        return None
    return RFFrequencyFoundEvent(payload[0], payload[6:7])

def _rf_frequency_found(payload: bytes, is_rm4: bool) -> Optional[DeviceEvent]:
    if len(payload) < 5 or payload[4] != 0x01:
        return None
    return RFFrequencyFoundEvent(payload[0], payload[4:5])

def _rf_sweep_result(payload: bytes, is_rm4: bool) -> Optional[DeviceEvent]:
    if len(payload) < 5:
        return None
    # rm4 devices report a found frequency without setting the flag byte
    if payload[4] != 0x01 and not is_rm4:
        return None
    return RFSweepResultEvent(payload[0], payload[4:5])

PAYLOAD_HANDLERS: Dict[int, PayloadHandler] = {
    0x01: _temperature,
    0x04: _check_data,
    0x09: _rm4_rf_frequency_found,
    0x0a: _temperature_humidity,
    0x1a: _rf_frequency_found,
    0x1b: _rf_sweep_result,
    0x26: _raw_data,
    0x5e: _learned_data,
    0xa9: _raw_data,
    0xb0: _raw_data,
    0xb1: _raw_data,
    0xb2: _raw_data,
}
"""Handlers indexed by the leading payload byte."""

def decode_response_payload(payload: bytes, is_rm4: bool=False) -> Optional[DeviceEvent]:
    """Decodes a header-stripped data reply payload into a typed event.

    Parameters:
        payload:  The decrypted payload with any leading request header echo removed.
        is_rm4:   True if the device belongs to the rm4 generation. Only affects tag 0x1b.

    Returns None for empty payloads, unknown tags, and payloads too short for their tag.
    """
    if len(payload) == 0:
        return None
    handler = PAYLOAD_HANDLERS.get(payload[0])
    if handler is None:
        logger.debug(f"Ignoring payload with unknown tag 0x{payload[0]:02x}")
        return None
    return handler(payload, is_rm4)

def strip_request_header(payload: bytes, request_header: bytes) -> bytes:
    """Removes the echo of the generation request header from a data reply payload.

    The first occurrence of the header is searched for; if found, everything up to and
    including it is dropped. An empty header leaves the payload unchanged.
    """
    if len(request_header) == 0:
        return payload
    i = payload.find(request_header)
    if i < 0:
        return payload
    return payload[i + len(request_header):]
