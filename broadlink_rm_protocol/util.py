#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Simple utility functions used by this package
"""

from __future__ import annotations

import netifaces
import socket
from ipaddress import IPv4Address, IPv6Address

from .internal_types import *
from .constants import CHECKSUM_SEED

MAC_LENGTH = 6

def checksum(data: bytes) -> int:
    """Computes the protocol's 16-bit checksum: 0xbeaf plus the sum of all bytes, masked to 16 bits."""
    return (CHECKSUM_SEED + sum(data)) & 0xffff

def verify_checksum(expected: int, data: bytes) -> bool:
    """Returns True if expected is the checksum of data."""
    return checksum(data) == (expected & 0xffff)

def reverse_mac(mac: bytes) -> bytes:
    """Reverses the byte order of a 6-byte MAC address. Applying it twice yields the original."""
    if len(mac) != MAC_LENGTH:
        raise ValueError(f"A MAC address must be {MAC_LENGTH} bytes, got {len(mac)}")
    return bytes(reversed(mac))

def mac_to_str(mac: bytes) -> str:
    """Formats a MAC address as lowercase hex without separators (e.g., "ec0bae8c43f1")."""
    return mac.hex()

def parse_mac(text: str) -> bytes:
    """Parses a MAC address written as "ec:0b:ae:8c:43:f1", "ec-0b-ae-8c-43-f1" or "ec0bae8c43f1"."""
    hex_str = text.strip().replace(':', '').replace('-', '')
    try:
        mac = bytes.fromhex(hex_str)
    except ValueError as e:
        raise ValueError(f"Invalid MAC address: {text!r}") from e
    if len(mac) != MAC_LENGTH:
        raise ValueError(f"Invalid MAC address: {text!r}")
    return mac

def get_local_ip_addresses_and_interfaces(
        address_family: Union[socket.AddressFamily, int]=socket.AF_INET,
        include_loopback: bool=True
    ) -> List[Tuple[str, str]]:
    """Returns a list of Tuple[ip_address: str, interface_name: str] for the IP addresses of the local host
       in a requested address family. The result is sorted in a way that attempts to place the "preferred"
       canonical IP address first in the list, according to the following scheme:
           1. Addresses on the default gateway interface precede all other addresses.
           2. Non-loopback addresses precede loopback addresses.
           3. IPV4 addresses that begin with 172. follow other IPV4 addresses. This is a hack to
              deprioritize local docker network addresses.
    """
    result_with_priority: List[Tuple[int, str, str]] = []
    assert int(address_family) in (int(socket.AF_INET), int(socket.AF_INET6))
    is_ipv6 = int(address_family) == int(socket.AF_INET6)
    _, default_gateway_ifname = get_default_ip_gateway(address_family)
    netiface_family = netifaces.AF_INET6 if is_ipv6 else netifaces.AF_INET
    for ifname in netifaces.interfaces():
        ifinfo = netifaces.ifaddresses(ifname)
        if netiface_family in ifinfo:
            for addrinfo in ifinfo[netiface_family]:
              ip_str = addrinfo['addr']
              assert isinstance(ip_str, str)
              is_loopback = IPv6Address(ip_str.split('%', 1)[0]).is_loopback if is_ipv6 else IPv4Address(ip_str).is_loopback
              if is_loopback:
                  if not include_loopback:
                      continue
                  priority = 3
              elif ifname == default_gateway_ifname:
                  priority = 0
              elif not is_ipv6 and ip_str.startswith('172.'):
                  priority = 2
              else:
                  priority = 1

              result_with_priority.append((priority, ip_str, ifname))
    return [ (ip, ifname) for _, ip, ifname in sorted(result_with_priority)]

def get_local_ip_addresses(address_family: Union[socket.AddressFamily, int]=socket.AF_INET, include_loopback: bool=True) -> List[str]:
    """Returns a List[ip_address: str] for the IP addresses of the local host
       in a requested address family, preferred addresses first (see get_local_ip_addresses_and_interfaces)."""
    return [ ip for ip, _ in get_local_ip_addresses_and_interfaces(address_family, include_loopback=include_loopback)]

def get_default_ip_gateway(address_family: socket.AddressFamily | int=socket.AF_INET) -> Tuple[Optional[str], Optional[str]]:
    """Returns the (gateway_ip_address: str, gateway_interface_name: str) for the default IP gateway in the
       requested family, if any.
       returns (None, None) if there is no default gateway in the requested family."""
    assert int(address_family) in (int(socket.AF_INET), int(socket.AF_INET6))
    netiface_family = netifaces.AF_INET if int(address_family) == int(socket.AF_INET) else netifaces.AF_INET6
    gws = netifaces.gateways()
    if "default" in gws:
        default_gateway_infos = gws["default"]
        if netiface_family in default_gateway_infos:
            gw_ip, gw_interface_name = default_gateway_infos[netiface_family][:2]
            return (gw_ip, gw_interface_name)
    return (None, None)
