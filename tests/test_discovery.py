#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

import asyncio
import datetime
import struct

import pytest

from broadlink_rm_protocol.discovery import (
    BroadlinkDiscovery,
    DiscoveredDeviceInfo,
    build_hello_packet,
    parse_discovery_response,
    discover,
  )
from broadlink_rm_protocol.exceptions import MalformedResponseError, UnsupportedDeviceError
from broadlink_rm_protocol.session import SessionStatus
from broadlink_rm_protocol.util import checksum

from fake_device import FakeDevice

RM_MAC = bytes.fromhex('ec0bae8c43f1')
PLUG_MAC = bytes.fromhex('34ea34000001')

def _discovery_response(mac: bytes, device_type: int) -> bytes:
    data = bytearray(0x80)
    struct.pack_into('<H', data, 0x34, device_type)
    data[0x3a:0x40] = bytes(reversed(mac))
    return bytes(data)

def _tz(hours: int) -> datetime.timezone:
    return datetime.timezone(datetime.timedelta(hours=hours))

def test_hello_packet_layout():
    # a Sunday in March
    now = datetime.datetime(2023, 3, 5, 14, 30, tzinfo=_tz(-5))
    packet = build_hello_packet('192.168.1.10', 0x1234, now)
    assert len(packet) == 0x30
    assert packet[0x08] == 0xf9
    assert packet[0x09:0x0c] == b'\xff\xff\xff'
    assert packet[0x0c:0x0e] == b'\xe7\x07'
    assert packet[0x0e] == 30
    assert packet[0x0f] == 14
    assert packet[0x10] == 23
    assert packet[0x11] == 0
    assert packet[0x12] == 5
    assert packet[0x13] == 2
    assert packet[0x18:0x1c] == b'\xc0\xa8\x01\x0a'
    assert packet[0x1c:0x1e] == b'\x34\x12'
    assert packet[0x26] == 0x06
    zeroed = bytearray(packet)
    zeroed[0x20:0x22] = b'\x00\x00'
    assert packet[0x20:0x22] == struct.pack('<H', checksum(zeroed))

def test_hello_packet_positive_timezone():
    now = datetime.datetime(2024, 1, 1, 0, 0, tzinfo=_tz(2))
    packet = build_hello_packet('10.0.0.1', 80, now)
    assert packet[0x08] == 2
    assert packet[0x09:0x0c] == b'\x00\x00\x00'
    assert packet[0x11] == 1
    assert packet[0x13] == 0

def test_parse_discovery_response():
    assert parse_discovery_response(_discovery_response(RM_MAC, 0x2737)) == (RM_MAC, 0x2737)

def test_parse_short_discovery_response():
    with pytest.raises(MalformedResponseError):
        parse_discovery_response(bytes(0x3f))

def test_discovered_device_info_classification():
    info = DiscoveredDeviceInfo(None, ('192.168.1.32', 80), RM_MAC, 0x5213)
    assert info.is_supported
    assert info.model == 'Broadlink RM4 Pro'
    assert info.mac_str == 'ec0bae8c43f1'
    assert info.to_jsonable()['device_class'] == 'rm4-plus'

    info = DiscoveredDeviceInfo(None, ('192.168.1.33', 80), PLUG_MAC, 0x2711)
    assert not info.is_supported
    assert isinstance(info.rejection, UnsupportedDeviceError)

def _discovery(device: FakeDevice, **kwargs) -> BroadlinkDiscovery:
    return BroadlinkDiscovery(
        bind_addresses=['127.0.0.1'],
        broadcast_address='127.0.0.1',
        discovery_port=device.port,
        **kwargs
      )

@pytest.mark.asyncio
async def test_discovery_deduplicates_and_classifies():
    device = await FakeDevice.create()
    try:
        async with _discovery(device, create_sessions=False) as discovery:
            async with discovery.subscribe() as subscriber:
                hello, addr = await asyncio.wait_for(device.received.get(), 2.0)
                assert len(hello) == 0x30
                assert hello[0x26] == 0x06
                assert hello[0x1c:0x1e] == struct.pack('<H', addr[1])

                device.send_raw(_discovery_response(RM_MAC, 0x2737), addr)
                device.send_raw(_discovery_response(RM_MAC, 0x2737), addr)
                device.send_raw(_discovery_response(PLUG_MAC, 0x2711), addr)
                device.send_raw(b'\x00' * 0x20, addr)
                device.send_raw(_discovery_response(PLUG_MAC, 0x2711), addr)

                first = await asyncio.wait_for(subscriber.receive(), 2.0)
                second = await asyncio.wait_for(subscriber.receive(), 2.0)
                assert first is not None and second is not None
                assert first.mac == RM_MAC and first.is_supported
                assert second.mac == PLUG_MAC and not second.is_supported
                await asyncio.sleep(0.05)
                assert subscriber.queue.empty()

            assert set(discovery.discovered.keys()) == {'ec0bae8c43f1', '34ea34000001'}
            assert discovery.devices == {}
    finally:
        device.close()

@pytest.mark.asyncio
async def test_discovery_authenticates_supported_devices():
    device = await FakeDevice.create()
    try:
        async with _discovery(device) as discovery:
            _, addr = await asyncio.wait_for(device.received.get(), 2.0)
            device.send_raw(_discovery_response(RM_MAC, 0x2737), addr)
            request = await device.handshake()
            assert request.command == 0x65

            session = discovery.devices['ec0bae8c43f1']
            await session.wait_until_ready(timeout=2.0)
            assert session.status == SessionStatus.READY
            assert session.host == ('127.0.0.1', device.port)
            assert discovery.discovered['ec0bae8c43f1'].session is session
        assert not session.is_started
    finally:
        device.close()

@pytest.mark.asyncio
async def test_iter_discovered():
    device = await FakeDevice.create()
    try:
        async with _discovery(device, create_sessions=False) as discovery:
            # the hello sent on start
            await asyncio.wait_for(device.received.get(), 2.0)

            async def respond() -> None:
                _, addr = await asyncio.wait_for(device.received.get(), 2.0)
                device.send_raw(_discovery_response(RM_MAC, 0x27c2), addr)

            responder = asyncio.ensure_future(respond())
            found = [info async for info in discovery.iter_discovered(wait_time=0.3)]
            await responder
            assert [info.mac for info in found] == [RM_MAC]
            assert found[0].model == 'Broadlink RM3 Mini B'
    finally:
        device.close()

@pytest.mark.asyncio
async def test_add_device():
    device = await FakeDevice.create()
    try:
        async with _discovery(device, create_sessions=False) as discovery:
            info = discovery.add_device('192.168.1.32', RM_MAC, 0x2737)
            assert info.socket_binding is None
            assert discovery.add_device('192.168.1.40', RM_MAC, 0x2737) is info
            assert list(discovery.discovered.values()) == [info]
    finally:
        device.close()

@pytest.mark.asyncio
async def test_discover_convenience():
    device = await FakeDevice.create()

    async def respond() -> None:
        _, addr = await asyncio.wait_for(device.received.get(), 2.0)
        device.send_raw(_discovery_response(RM_MAC, 0x51da), addr)

    try:
        responder = asyncio.ensure_future(respond())
        found = await discover(
            wait_time=0.3,
            bind_addresses=['127.0.0.1'],
            broadcast_address='127.0.0.1',
            discovery_port=device.port,
          )
        await responder
        assert len(found) == 1
        assert found[0].mac == RM_MAC
        assert found[0].session is None
    finally:
        device.close()

@pytest.mark.asyncio
async def test_iter_discovered_empty_window():
    device = await FakeDevice.create()
    try:
        async with _discovery(device, create_sessions=False) as discovery:
            found = [info async for info in discovery.iter_discovered(wait_time=0.1)]
            assert found == []
            # a second window on the same client still works
            found = [info async for info in discovery.iter_discovered(wait_time=0.1)]
            assert found == []
            assert discovery.is_started
    finally:
        device.close()
