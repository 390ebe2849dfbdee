#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Exceptions defined by this package"""

from __future__ import annotations

from typing import Optional


class BroadlinkError(Exception):
  """Base class for all error exceptions defined by this package."""
  pass

class DeviceClassificationError(BroadlinkError):
  """A device type code that cannot be driven by this package. No session is created for it."""
  device_type: int

  def __init__(self, device_type: int, msg: Optional[str]=None):
    if msg is None:
      msg = f"Device type 0x{device_type:04x} is not supported"
    super().__init__(msg)
    self.device_type = device_type

class UnsupportedDeviceError(DeviceClassificationError):
  """The device type is known, but it is not an IR/RF blaster."""
  pass

class UnknownDeviceTypeError(DeviceClassificationError):
  """The device type does not appear in any known device table."""
  pass

class UnsupportedCommandError(BroadlinkError):
  """The command is not available for the device's generation (e.g., RF commands on an IR-only device)."""
  pass

class MalformedResponseError(BroadlinkError):
  """A datagram that could not be decoded (too short, misaligned ciphertext)."""
  pass

class DeviceReportedError(BroadlinkError):
  """The device returned a non-zero error code in the response header."""
  code: int
  request_id: int
  ack: int

  def __init__(self, code: int, request_id: int, ack: int):
    super().__init__(f"Device reported error 0x{code:04x} for request {request_id} (ack 0x{ack:02x})")
    self.code = code
    self.request_id = request_id
    self.ack = ack

class RequestTimeoutError(BroadlinkError):
  """No matching response arrived before the request's deadline."""
  request_id: int

  def __init__(self, request_id: int, timeout: float):
    super().__init__(f"Timeout: no response for request {request_id} within {timeout} seconds")
    self.request_id = request_id

class TransportError(BroadlinkError):
  """A socket could not be bound or a datagram could not be sent."""
  pass
