#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

import struct

import pytest

from broadlink_rm_protocol.constants import DEFAULT_KEY, DEFAULT_IV, PACKET_MAGIC
from broadlink_rm_protocol.exceptions import MalformedResponseError, DeviceReportedError
from broadlink_rm_protocol.packet import (
    pad_payload,
    aes_encrypt,
    aes_decrypt,
    encode_packet,
    decode_packet,
    build_auth_payload,
  )
from broadlink_rm_protocol.util import checksum

MAC = bytes.fromhex('ec0bae8c43f1')
SESSION_ID = b'\x01\x02\x03\x04'

def _encode(payload: bytes=b'\x04', counter: int=0x1234, device_type: int=0x2737) -> bytes:
    return encode_packet(0x6a, payload, MAC, counter, device_type, DEFAULT_KEY, DEFAULT_IV, SESSION_ID)

@pytest.mark.parametrize('length, padded_length', [(0, 16), (1, 16), (15, 16), (16, 32), (17, 32)])
def test_pad_payload(length: int, padded_length: int):
    padded = pad_payload(b'\x01' * length)
    assert len(padded) == padded_length
    assert padded[length:] == bytes(padded_length - length)

def test_aes_cbc_known_answer():
    # NIST SP 800-38A, F.2.1 CBC-AES128.Encrypt, first block
    key = bytes.fromhex('2b7e151628aed2a6abf7158809cf4f3c')
    iv = bytes.fromhex('000102030405060708090a0b0c0d0e0f')
    plaintext = bytes.fromhex('6bc1bee22e409f96e93d7e117393172a')
    ciphertext = bytes.fromhex('7649abac8119b246cee98e9b12e9197d')
    assert aes_encrypt(key, iv, plaintext) == ciphertext
    assert aes_decrypt(key, iv, ciphertext) == plaintext

def test_encode_header_layout():
    packet = _encode(payload=b'\x04')
    assert len(packet) == 0x38 + 16
    assert packet[0x00:0x08] == PACKET_MAGIC
    assert packet[0x24:0x26] == b'\x37\x27'
    assert packet[0x26] == 0x6a
    assert packet[0x28:0x2a] == b'\x34\x12'
    assert packet[0x2a:0x30] == bytes.fromhex('f1438cae0bec')
    assert packet[0x30:0x34] == SESSION_ID

def test_encode_checksums():
    payload = b'\x02\x00\x00\x00\xaa\xbb'
    packet = _encode(payload=payload)
    inner, = struct.unpack_from('<H', packet, 0x34)
    assert inner == checksum(pad_payload(payload))
    outer, = struct.unpack_from('<H', packet, 0x20)
    zeroed = bytearray(packet)
    zeroed[0x20:0x22] = b'\x00\x00'
    assert outer == checksum(zeroed)

def test_encode_encrypts_padded_payload():
    payload = b'\x02\x00\x00\x00\xaa\xbb'
    packet = _encode(payload=payload)
    assert aes_decrypt(DEFAULT_KEY, DEFAULT_IV, packet[0x38:]) == pad_payload(payload)

def test_encode_masks_counter():
    packet = _encode(counter=0x12345)
    assert packet[0x28:0x2a] == b'\x45\x23'

def test_encode_rejects_bad_mac():
    with pytest.raises(ValueError):
        encode_packet(0x6a, b'', b'\x01\x02', 0, 0x2737, DEFAULT_KEY, DEFAULT_IV, SESSION_ID)

def test_decode_encoded_packet():
    payload = b'\x01\x00\x00\x00\x17\x05'
    decoded = decode_packet(_encode(payload=payload, counter=0xbeef), DEFAULT_KEY, DEFAULT_IV)
    assert decoded.ack == 0x6a
    assert decoded.request_id == 0xbeef
    assert decoded.error_code == 0
    assert decoded.device_type == 0x2737
    assert decoded.payload == pad_payload(payload)

def test_decode_short_datagram():
    with pytest.raises(MalformedResponseError):
        decode_packet(bytes(0x38), DEFAULT_KEY, DEFAULT_IV)

def test_decode_misaligned_ciphertext():
    with pytest.raises(MalformedResponseError):
        decode_packet(bytes(0x38 + 5), DEFAULT_KEY, DEFAULT_IV)

def test_decode_device_error():
    packet = bytearray(_encode(counter=42))
    struct.pack_into('<H', packet, 0x22, 0xfff9)
    with pytest.raises(DeviceReportedError) as exc_info:
        decode_packet(bytes(packet), DEFAULT_KEY, DEFAULT_IV)
    assert exc_info.value.code == 0xfff9
    assert exc_info.value.request_id == 42

def test_auth_payload():
    payload = build_auth_payload()
    assert len(payload) == 0x50
    assert payload[0x00:0x04] == bytes(4)
    assert payload[0x04:0x13] == b'1' * 15
    assert payload[0x13] == 0
    assert payload[0x1e] == 0x01
    assert payload[0x2d] == 0x01
    assert payload[0x30:0x37] == b'Test  1'
