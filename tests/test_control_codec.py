#!/usr/bin/env python3
"""
Tests for flow frames, control messages and their payloads
"""

import sys
import os
import json
import struct

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from flowband import (
    FrameType, FlowFrame, OpCode, ControlMessage, ControlCodec, TestParameters,
    StatisticsReport, FlowIdManager, data_endpoint_name,
)


def test_flow_frame_format():
    """Test SDU frame header layout"""
    payload = b'x' * 500
    frame = FlowFrame.format_frame(FrameType.SDU, 12345, 42, payload)

    assert len(frame) == FlowFrame.HEADER_LEN + 500

    # Parse header by hand
    frame_type_val = frame[0]
    flow_id = struct.unpack('>I', b'\x00' + frame[1:4])[0]
    sequence = struct.unpack('>Q', frame[4:12])[0]

    assert frame_type_val == FrameType.SDU.value
    assert flow_id == 12345
    assert sequence == 42
    assert frame[12:] == payload

    frame_type, flow_id, sequence, body = FlowFrame.parse_frame(frame)
    assert (frame_type, flow_id, sequence, body) == (FrameType.SDU, 12345, 42, payload)
    print("✓ SDU frame header layout")


def test_flow_frame_json_body():
    frame = FlowFrame.format_json_frame(FrameType.ALLOCATE, 0, 0, {'endpoint': data_endpoint_name(9)})
    frame_type, _, _, body = FlowFrame.parse_frame(frame)

    assert frame_type == FrameType.ALLOCATE
    assert json.loads(body.decode('utf-8')) == {'endpoint': 'flowband.data/9'}
    assert FlowFrame.parse_json_body(body) == {'endpoint': 'flowband.data/9'}
    assert FlowFrame.parse_json_body(b'') is None
    assert FlowFrame.parse_json_body(b'[1, 2]') is None
    assert FlowFrame.parse_json_body(b'\xff\xfe') is None
    print("✓ Management frames carry JSON bodies")


def test_flow_frame_rejects_bad_input():
    with pytest.raises(ValueError):
        FlowFrame.parse_frame(b'\x03\x00\x00')
    with pytest.raises(ValueError):
        FlowFrame.parse_frame(bytes([99]) + bytes(11))
    with pytest.raises(ValueError):
        FlowFrame.format_frame(FrameType.SDU, 1, 0, bytes(70000))
    print("✓ Short, unknown and oversized frames are rejected")


def test_control_message_layout():
    message = ControlMessage(OpCode.STOP, 77, 'statistics', '/flowband/statistics', b'{"a": 1}')
    data = ControlCodec.encode(message)

    op_code, invoke_id, result, class_len, name_len, has_value = struct.unpack('>BIbHHB', data[:11])
    assert op_code == OpCode.STOP.value
    assert invoke_id == 77
    assert result == 0
    assert class_len == len('statistics')
    assert name_len == len('/flowband/statistics')
    assert has_value == 1
    assert data[11:21] == b'statistics'
    assert data.endswith(b'{"a": 1}')

    assert ControlCodec.decode(data) == message
    print("✓ Control message header layout")


def test_control_message_without_value():
    message = ControlMessage(OpCode.START, 3, 'test', '/flowband/test')
    decoded = ControlCodec.decode(ControlCodec.encode(message))
    assert decoded.obj_value is None

    # An empty value is still a value
    message = ControlMessage(OpCode.STOP, 4, obj_value=b'')
    assert ControlCodec.decode(ControlCodec.encode(message)).obj_value == b''
    print("✓ Absent and empty object values are distinguished")


def test_reply_preserves_correlation():
    request = ControlMessage(OpCode.STOP, 12, 'statistics', '/flowband/statistics', b'{}')
    reply = request.reply(b'{"x": 1}')

    assert reply.op_code == OpCode.STOP_R
    assert reply.invoke_id == 12
    assert reply.obj_class == 'statistics'
    assert reply.obj_name == '/flowband/statistics'
    assert reply.obj_value == b'{"x": 1}'

    with pytest.raises(ValueError):
        reply.reply()
    print("✓ Replies keep invoke id, object class and object name")


def test_control_codec_rejects_bad_input():
    with pytest.raises(ValueError):
        ControlCodec.decode(b'')
    with pytest.raises(ValueError):
        ControlCodec.decode(struct.pack('>BIbHHB', 200, 1, 0, 0, 0, 0))
    with pytest.raises(ValueError):
        # Claims a 50-byte object class that is not there
        ControlCodec.decode(struct.pack('>BIbHHB', OpCode.CREATE.value, 1, 0, 50, 0, 0) + b'abc')
    print("✓ Truncated and unknown control messages are rejected")


def test_test_parameters_payload():
    parameters = TestParameters(flow_count=3, unit_count=10, unit_size=64, client_sends=False,
                                server_sends=True, session_id='5')
    assert TestParameters.from_bytes(parameters.to_bytes()) == parameters

    with pytest.raises(ValueError):
        TestParameters.from_bytes(b'{"flow_count": 1}')
    with pytest.raises(ValueError):
        TestParameters.from_bytes(b'[]')
    with pytest.raises(ValueError):
        TestParameters.from_bytes(json.dumps({'flow_count': 'many', 'unit_count': 1, 'unit_size': 1,
                                              'client_sends': True, 'server_sends': False}).encode('utf-8'))
    print("✓ Test parameters payload")


def test_test_parameters_reject_mistyped_fields():
    valid = {'flow_count': 1, 'unit_count': 10, 'unit_size': 64, 'client_sends': True, 'server_sends': False}

    for key, value in (('client_sends', 'false'), ('server_sends', 1), ('client_sends', None),
                       ('flow_count', True), ('unit_count', 2.5), ('unit_size', '64')):
        payload = dict(valid)
        payload[key] = value
        with pytest.raises(ValueError):
            TestParameters.from_bytes(json.dumps(payload).encode('utf-8'))

    with pytest.raises(ValueError):
        StatisticsReport.from_bytes(b'{"client_first_sent_us": true}')
    print("✓ Mistyped parameter fields are rejected instead of coerced")


def test_test_parameters_clamp():
    requested = TestParameters(flow_count=50, unit_count=5, unit_size=2000, session_id='x')
    clamped = requested.clamp(10, 1000, 1400)

    assert (clamped.flow_count, clamped.unit_count, clamped.unit_size) == (10, 5, 1400)
    assert clamped.session_id == 'x'
    assert requested.flow_count == 50
    print("✓ Clamp returns a limited copy")


def test_statistics_report_payload():
    report = StatisticsReport.from_bytes(b'{"client_first_sent_us": 10, "client_last_sent_us": 20}')
    assert report.client_first_sent_us == 10
    assert report.client_last_sent_us == 20
    assert report.server_first_received_us == 0

    with pytest.raises(ValueError):
        StatisticsReport.from_bytes(b'{"client_first_sent_us": "soon"}')
    with pytest.raises(ValueError):
        StatisticsReport.from_bytes(b'garbage')
    print("✓ Statistics report payload")


def test_flow_id_manager():
    manager = FlowIdManager(first_id=1, last_id=3)
    ids = [manager.allocate() for _ in range(3)]
    assert sorted(ids) == [1, 2, 3]

    with pytest.raises(RuntimeError):
        manager.allocate()

    manager.release(2)
    manager.release(2)
    assert manager.allocate() == 2
    with pytest.raises(RuntimeError):
        manager.allocate()
    print("✓ Flow ids are unique and reusable after release")


if __name__ == '__main__':
    sys.exit(pytest.main([__file__, '-v']))
