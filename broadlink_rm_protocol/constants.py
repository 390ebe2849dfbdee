# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Constants used by this package"""

PACKET_MAGIC = bytes([0x5a, 0xa5, 0xaa, 0x55, 0x5a, 0xa5, 0xaa, 0x55])
"""The fixed 8-byte magic value at the start of every command packet."""

HEADER_LENGTH = 0x38
"""Length of the unencrypted command packet header."""

MIN_RESPONSE_LENGTH = HEADER_LENGTH + 1
"""Responses shorter than this carry no ciphertext and are discarded."""

DISCOVERY_PACKET_LENGTH = 0x30
"""Length of the broadcast discovery "hello" packet."""

MIN_DISCOVERY_RESPONSE_LENGTH = 0x40
"""Discovery responses must reach past the MAC address at 0x3a..0x3f."""

AES_BLOCK_SIZE = 16

CHECKSUM_SEED = 0xbeaf
"""Initial value of the 16-bit running-sum checksum."""

DEFAULT_KEY = bytes([0x09, 0x76, 0x28, 0x34, 0x3f, 0xe9, 0x9e, 0x23, 0x76, 0x5c, 0x15, 0x13, 0xac, 0xcf, 0x8b, 0x02])
"""The AES key used until the handshake negotiates a session key."""

DEFAULT_IV = bytes([0x56, 0x2e, 0x17, 0x99, 0x6d, 0x09, 0x3d, 0x28, 0xdd, 0xb3, 0xba, 0x69, 0x5a, 0x2e, 0x6f, 0x58])
"""The AES initialization vector. Fixed for the lifetime of the protocol."""

DEFAULT_SESSION_ID = bytes(4)
"""The session id used until the device assigns one during the handshake."""

# Outer command codes (header byte 0x26 of a request)
CMD_AUTHENTICATE = 0x65
CMD_COMMAND = 0x6a
DISCOVERY_MARKER = 0x06

# Ack tags (header byte 0x26 of a response)
ACK_HANDSHAKE = 0xe9
ACK_DATA = 0xee
ACK_DATA_ALT = 0xef
ACK_PLAIN = 0x72

# Sub-commands carried in the payload of CMD_COMMAND
SUBCMD_SEND_DATA = bytes([0x02, 0x00, 0x00, 0x00])
SUBCMD_ENTER_LEARNING = 0x03
SUBCMD_CHECK_DATA = 0x04
SUBCMD_CHECK_TEMPERATURE = 0x01
SUBCMD_CHECK_TEMPERATURE_RM4 = 0x24
SUBCMD_ENTER_RF_SWEEP = 0x19
SUBCMD_CHECK_RF_DATA = 0x1a
SUBCMD_CHECK_RF_DATA_2 = 0x1b
SUBCMD_CANCEL_LEARNING = 0x1e

# Generation-dependent sub-command prefixes
RM4_REQUEST_HEADER = bytes([0x04, 0x00])
RM4_CODE_SENDING_HEADER = bytes([0xda, 0x00])
LEGACY_EXCEPTION_CODE_SENDING_HEADER = bytes([0xd0, 0x00])

DISCOVERY_PORT = 80
"""The UDP port that devices listen on for discovery broadcasts and commands."""

BROADCAST_ADDRESS = "255.255.255.255"

DEFAULT_DISCOVERY_WAIT_TIME = 10.0
"""The default amount of time (in seconds) to collect discovery responses."""

DEFAULT_RESPONSE_TIMEOUT = 5.0
"""The default amount of time (in seconds) to wait for a response to a command."""

REQUEST_ID_MASK = 0xffff
