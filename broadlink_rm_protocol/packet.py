#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Encoding and decoding of encrypted Broadlink command packets.

A command packet is a fixed 0x38-byte header followed by an AES-128-CBC encrypted,
zero-padded payload:

    0x00-0x07  magic 5a a5 aa 55 5a a5 aa 55
    0x20-0x21  checksum of the whole packet (header + ciphertext), little-endian
    0x22-0x23  error code (responses only), little-endian
    0x24-0x25  device type, little-endian
    0x26       command (requests) or ack tag (responses)
    0x28-0x29  request id (counter), little-endian
    0x2a-0x2f  MAC address, reversed
    0x30-0x33  session id
    0x34-0x35  checksum of the padded plaintext payload, little-endian
    0x38-      ciphertext

The codec is stateless; the session owns the key, session id and counter.
"""

from __future__ import annotations

import struct

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    PACKET_MAGIC,
    HEADER_LENGTH,
    MIN_RESPONSE_LENGTH,
    AES_BLOCK_SIZE,
    REQUEST_ID_MASK,
  )
from .exceptions import MalformedResponseError, DeviceReportedError
from .util import checksum, reverse_mac, mac_to_str, MAC_LENGTH

AUTH_PAYLOAD_LENGTH = 0x50

def pad_payload(payload: bytes) -> bytes:
    """Right-pads a payload with zero bytes to a multiple of the AES block size.

    Like the devices' reference client, a full block of zeros is appended when the
    payload is already aligned.
    """
    return payload + bytes(AES_BLOCK_SIZE - len(payload) % AES_BLOCK_SIZE)

def aes_encrypt(key: bytes, iv: bytes, data: bytes) -> bytes:
    """AES-128-CBC encryption of block-aligned data, without padding."""
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(data) + encryptor.finalize()

def aes_decrypt(key: bytes, iv: bytes, data: bytes) -> bytes:
    """AES-128-CBC decryption of block-aligned data. Padding is not removed."""
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    return decryptor.update(data) + decryptor.finalize()

def encode_packet(
        command: int,
        payload: bytes,
        mac: bytes,
        counter: int,
        device_type: int,
        key: bytes,
        iv: bytes,
        session_id: bytes,
      ) -> bytes:
    """Builds an encrypted command packet.

    Parameters:
        command:      The command code written at 0x26 (e.g., 0x65 authenticate, 0x6a command).
        payload:      The unpadded plaintext payload.
        mac:          The device MAC address in canonical order; it is written reversed.
        counter:      The request id; only the low 16 bits are used.
        device_type:  The 16-bit device type code.
        key:          The 16-byte AES key currently in effect.
        iv:           The 16-byte AES initialization vector.
        session_id:   The 4-byte session id currently in effect.
    """
    if len(mac) != MAC_LENGTH:
        raise ValueError(f"A MAC address must be {MAC_LENGTH} bytes, got {len(mac)}")
    if len(session_id) != 4:
        raise ValueError(f"A session id must be 4 bytes, got {len(session_id)}")
    request_id = counter & REQUEST_ID_MASK

    header = bytearray(HEADER_LENGTH)
    header[0x00:0x08] = PACKET_MAGIC
    struct.pack_into('<H', header, 0x24, device_type & 0xffff)
    header[0x26] = command
    struct.pack_into('<H', header, 0x28, request_id)
    header[0x2a:0x30] = reverse_mac(mac)
    header[0x30:0x34] = session_id

    padded = pad_payload(payload)
    struct.pack_into('<H', header, 0x34, checksum(padded))
    logger.debug(f"({mac_to_str(mac)}) Encoding command 0x{command:02x}, request {request_id}, payload {payload.hex()}")

    packet = header + aes_encrypt(key, iv, padded)
    struct.pack_into('<H', packet, 0x20, checksum(packet))
    return bytes(packet)

class DecodedPacket:
    """A response datagram that passed header checks and was decrypted."""

    ack: int
    """The ack tag at header byte 0x26 (e.g., 0xe9 handshake reply, 0xee/0xef data reply, 0x72 ack)"""

    request_id: int
    """The request id at header bytes 0x28-0x29, used to correlate with the pending request"""

    error_code: int
    """The device-reported error code at header bytes 0x22-0x23 (always 0 for decoded packets)"""

    device_type: int
    """The device type at header bytes 0x24-0x25"""

    payload: bytes
    """The decrypted payload, including any trailing zero padding"""

    def __init__(self, ack: int, request_id: int, error_code: int, device_type: int, payload: bytes):
        self.ack = ack
        self.request_id = request_id
        self.error_code = error_code
        self.device_type = device_type
        self.payload = payload

    def __str__(self) -> str:
        return f"DecodedPacket(ack=0x{self.ack:02x}, request_id={self.request_id}, payload={self.payload.hex()})"

    def __repr__(self) -> str:
        return str(self)

def decode_packet(datagram: bytes, key: bytes, iv: bytes) -> DecodedPacket:
    """Validates and decrypts a response datagram.

    The whole-packet checksum is not verified; devices are known to be inconsistent about it.

    Raises:
        MalformedResponseError: The datagram is shorter than 0x39 bytes, or its ciphertext
                                is not a whole number of AES blocks.
        DeviceReportedError:    The header carries a non-zero error code. Nothing is decrypted.
    """
    if len(datagram) < MIN_RESPONSE_LENGTH:
        raise MalformedResponseError(f"Response too short: {len(datagram)} bytes")
    error_code, device_type, ack = struct.unpack_from('<HHB', datagram, 0x22)
    request_id, = struct.unpack_from('<H', datagram, 0x28)
    if error_code != 0:
        raise DeviceReportedError(error_code, request_id, ack)
    ciphertext = datagram[HEADER_LENGTH:]
    if len(ciphertext) % AES_BLOCK_SIZE != 0:
        raise MalformedResponseError(
            f"Encrypted payload length {len(ciphertext)} is not a multiple of {AES_BLOCK_SIZE}"
          )
    payload = aes_decrypt(key, iv, ciphertext)
    return DecodedPacket(ack, request_id, error_code, device_type, payload)

def build_auth_payload() -> bytes:
    """Builds the fixed 0x50-byte payload of the authentication handshake."""
    payload = bytearray(AUTH_PAYLOAD_LENGTH)
    payload[0x04:0x13] = b'\x31' * 15
    payload[0x1e] = 0x01
    payload[0x2d] = 0x01
    payload[0x30:0x37] = b'Test  1'
    return bytes(payload)
