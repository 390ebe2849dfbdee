#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

import pytest

from broadlink_rm_protocol.device_types import (
    DeviceClass,
    classify_device_type,
    get_device_classification,
    get_model_name,
    get_protocol_headers,
  )
from broadlink_rm_protocol.exceptions import (
    DeviceClassificationError,
    UnsupportedDeviceError,
    UnknownDeviceTypeError,
  )

@pytest.mark.parametrize('device_type, device_class', [
    (0x273d, DeviceClass.RM),
    (0x2737, DeviceClass.RM),
    (0x2787, DeviceClass.RM_PLUS),
    (0x51da, DeviceClass.RM4),
    (0x5213, DeviceClass.RM4_PLUS),
    (0x2711, DeviceClass.UNSUPPORTED),
    (0x0000, DeviceClass.UNSUPPORTED),
    (0x7530, DeviceClass.UNSUPPORTED),
    (0x7918, DeviceClass.UNSUPPORTED),
    (0x1234, DeviceClass.UNKNOWN),
  ])
def test_classify_device_type(device_type: int, device_class: DeviceClass):
    assert classify_device_type(device_type) == device_class

def test_oem_range_boundaries():
    assert classify_device_type(0x752f) == DeviceClass.UNKNOWN
    # 0x7919 is listed explicitly as a Honeywell SP2
    assert classify_device_type(0x7919) == DeviceClass.UNSUPPORTED

def test_rm_pro_phicomm():
    classification = get_device_classification(0x273d)
    assert classification.device_class == DeviceClass.RM
    assert classification.model == 'Broadlink RM Pro Phicomm'
    assert not classification.is_rf_capable
    assert not classification.is_rm4
    assert classification.headers.request_header == b''
    assert classification.headers.code_sending_header == b''

def test_rm4_pro():
    classification = get_device_classification(0x5213)
    assert classification.device_class == DeviceClass.RM4_PLUS
    assert classification.model == 'Broadlink RM4 Pro'
    assert classification.is_rf_capable
    assert classification.is_rm4
    assert classification.headers.request_header == b'\x04\x00'
    assert classification.headers.code_sending_header == b'\xda\x00'

def test_rm_plus_is_rf_capable():
    classification = get_device_classification(0x2787)
    assert classification.is_rf_capable
    assert not classification.is_rm4

@pytest.mark.parametrize('device_type', [0x5f36, 0x6508])
def test_legacy_header_exceptions(device_type: int):
    classification = get_device_classification(device_type)
    assert classification.device_class == DeviceClass.RM
    assert classification.headers.request_header == b'\x04\x00'
    assert classification.headers.code_sending_header == b'\xd0\x00'
    assert get_protocol_headers(device_type).code_sending_header == b'\xd0\x00'

def test_unsupported_device_raises():
    with pytest.raises(UnsupportedDeviceError) as exc_info:
        get_device_classification(0x2711)
    assert exc_info.value.device_type == 0x2711
    assert isinstance(exc_info.value, DeviceClassificationError)

def test_oem_range_raises_unsupported():
    with pytest.raises(UnsupportedDeviceError):
        get_device_classification(0x7600)

def test_unknown_device_raises():
    with pytest.raises(UnknownDeviceTypeError):
        get_device_classification(0x1234)

def test_model_names():
    assert get_model_name(0x2712) == 'Broadlink RM2'
    assert get_model_name(0x2711) == 'Broadlink SP2'
    assert get_model_name(0x1234) is None

def test_device_class_properties():
    assert DeviceClass.RM4.is_supported
    assert not DeviceClass.UNKNOWN.is_supported
    assert not DeviceClass.UNSUPPORTED.is_supported
