#!/usr/bin/env python3
"""
flowband - Multi-flow Bandwidth Test
Shared protocol pieces for the flowband server and client: flow frames,
control messages, negotiated test parameters, statistics and configuration.
"""


__version__ = "0.4"
__version_notes__ = """
Version 0.4:
- Server now merges its own timestamps into the STOP reply in microseconds
- All aggregate statistics are computed from millisecond-normalized timestamps
- Sent-rate uses the same 1000 scale factor as received-rate
- Non-positive measurement windows no longer raise, the rate is reported as unavailable

Version 0.3:
- Control messages carry object class, object name and a result code
- STOP replies preserve invoke id, object class and object name of the request
- Added send_sleep setting to pace server-side data units (microseconds)

Version 0.2:
- Test controller events are serialized through a per-session event queue
- Flow admission only while waiting for START; late flows are deallocated
- Added max_flows, max_units_per_flow and max_unit_size to config file

Version 0.1:
- Initial implementation of CREATE/START/STOP negotiation over a control flow
- Flow frames use a 12-byte header: type, 3-byte flow id, 8-byte sequence number
"""

import json
import struct
import sys
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from typing import Optional, Dict


CONTROL_ENDPOINT = "flowband.control"
DATA_ENDPOINT_PREFIX = "flowband.data/"

MAX_FLOW_ID = (2 ** 24) - 1
MAX_FRAME_LEN = 65507


def data_endpoint_name(session_id) -> str:
    """Return the name of the per-test data endpoint for a session"""
    return f"{DATA_ENDPOINT_PREFIX}{session_id}"


class FrameType(Enum):
    """Frame types for the flow transport header"""
    ALLOCATE   = 0
    ALLOCATE_R = 1
    DEALLOCATE = 2
    SDU        = 3


class OpCode(Enum):
    """Control message operation codes"""
    CREATE   = 0
    CREATE_R = 1
    START    = 2
    START_R  = 3
    STOP     = 4
    STOP_R   = 5


REPLY_OP_CODES = {
    OpCode.CREATE: OpCode.CREATE_R,
    OpCode.START: OpCode.START_R,
    OpCode.STOP: OpCode.STOP_R,
}


class FlowFrame:
    """Helper to format/unformat the 12-byte header + payload frames.

    Header layout (12 bytes):
      1 byte  - FrameType (int)
      3 bytes - flow_id (unsigned int, big-endian)
      8 bytes - sequence_number (unsigned long long, big-endian)
    Remaining bytes: raw SDU for SDU frames, UTF-8 encoded JSON otherwise
    """

    HEADER_LEN = 12

    @classmethod
    def format_frame(cls, frame_type, flow_id: int, sequence_number: int, payload: bytes = b'') -> bytes:
        ft = int(frame_type.value) if isinstance(frame_type, FrameType) else int(frame_type)
        # 1 byte frame type
        header = bytes([ft])
        # 3 bytes flow id
        header += int(flow_id).to_bytes(3, 'big')
        # 8 bytes sequence number
        header += struct.pack('>Q', int(sequence_number))

        frame = header + payload
        if len(frame) > MAX_FRAME_LEN:
            raise ValueError(f'Frame exceeds maximum size of {MAX_FRAME_LEN} bytes: {len(frame)} bytes')

        return frame

    @classmethod
    def format_json_frame(cls, frame_type, flow_id: int, sequence_number: int, json_obj) -> bytes:
        """Format frame with a JSON body instead of raw bytes"""
        body = json.dumps(json_obj).encode('utf-8') if json_obj is not None else b''
        return cls.format_frame(frame_type, flow_id, sequence_number, body)

    @classmethod
    def parse_frame(cls, data: bytes):
        if not data or len(data) < cls.HEADER_LEN:
            raise ValueError('Frame too short to parse')

        try:
            ft = FrameType(data[0])
        except ValueError:
            raise ValueError(f'Unknown frame type {data[0]}')

        flow_id = int.from_bytes(data[1:4], 'big')
        sequence_number = struct.unpack('>Q', data[4:12])[0]

        return ft, flow_id, sequence_number, data[12:]

    @classmethod
    def parse_json_body(cls, payload: bytes) -> Optional[Dict]:
        """Decode a management frame body, None when empty or not a JSON object"""
        if not payload:
            return None
        try:
            json_obj = json.loads(payload.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        return json_obj if isinstance(json_obj, dict) else None


@dataclass
class ControlMessage:
    """A decoded control message exchanged on the control flow"""
    op_code: OpCode
    invoke_id: int = 0
    obj_class: str = ""
    obj_name: str = ""
    obj_value: Optional[bytes] = None
    result: int = 0

    def reply(self, obj_value: Optional[bytes] = None, result: int = 0) -> 'ControlMessage':
        """Build the response to this message, keeping invoke id, object class and name"""
        if self.op_code not in REPLY_OP_CODES:
            raise ValueError(f'{self.op_code.name} is not a request')
        return ControlMessage(REPLY_OP_CODES[self.op_code], self.invoke_id,
                              self.obj_class, self.obj_name, obj_value, result)


class ControlCodec:
    """Encodes and decodes control messages.

    Layout (11-byte header, big-endian):
      1 byte  - OpCode
      4 bytes - invoke id
      1 byte  - result (signed)
      2 bytes - object class length
      2 bytes - object name length
      1 byte  - object value present flag
    Followed by object class, object name (UTF-8) and the raw object value.
    """

    HEADER = struct.Struct('>BIbHHB')

    @classmethod
    def encode(cls, message: ControlMessage) -> bytes:
        obj_class = message.obj_class.encode('utf-8')
        obj_name = message.obj_name.encode('utf-8')
        has_value = message.obj_value is not None
        header = cls.HEADER.pack(message.op_code.value, message.invoke_id, message.result,
                                 len(obj_class), len(obj_name), 1 if has_value else 0)
        return header + obj_class + obj_name + (message.obj_value if has_value else b'')

    @classmethod
    def decode(cls, data: bytes) -> ControlMessage:
        if not data or len(data) < cls.HEADER.size:
            raise ValueError('Control message too short to decode')

        op_val, invoke_id, result, class_len, name_len, has_value = cls.HEADER.unpack(data[:cls.HEADER.size])
        try:
            op_code = OpCode(op_val)
        except ValueError:
            raise ValueError(f'Unknown control op code {op_val}')

        offset = cls.HEADER.size
        if len(data) < offset + class_len + name_len:
            raise ValueError(f'Control message truncated: expected at least {offset + class_len + name_len} bytes, got {len(data)}')
        try:
            obj_class = data[offset:offset + class_len].decode('utf-8')
            offset += class_len
            obj_name = data[offset:offset + name_len].decode('utf-8')
            offset += name_len
        except UnicodeDecodeError as e:
            raise ValueError(f'Control message has invalid object naming: {e}')

        obj_value = data[offset:] if has_value else None
        return ControlMessage(op_code, invoke_id, obj_class, obj_name, obj_value, result)


def _json_object(binary_data: bytes, what: str) -> Dict:
    try:
        json_obj = json.loads(binary_data.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f'{what} is not valid JSON: {e}')
    if not isinstance(json_obj, dict):
        raise ValueError(f'{what} must be a JSON object')
    return json_obj


def _json_int(json_obj: Dict, key: str) -> int:
    value = json_obj[key]
    # bool is a subclass of int, don't let true/false pass as numbers
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f'{key} must be an integer, got {value!r}')
    return value


def _json_bool(json_obj: Dict, key: str) -> bool:
    value = json_obj[key]
    if not isinstance(value, bool):
        raise ValueError(f'{key} must be true or false, got {value!r}')
    return value


@dataclass
class TestParameters:
    """Parameters of a single test, negotiated with CREATE"""
    flow_count: int = 1
    unit_count: int = 1000
    unit_size: int = 1000
    client_sends: bool = True
    server_sends: bool = False
    session_id: str = ""

    def clamp(self, max_flows: int, max_units_per_flow: int, max_unit_size: int) -> 'TestParameters':
        """Return a copy with the numeric fields limited to the given maxima"""
        return TestParameters(
            flow_count=min(self.flow_count, max_flows),
            unit_count=min(self.unit_count, max_units_per_flow),
            unit_size=min(self.unit_size, max_unit_size),
            client_sends=self.client_sends,
            server_sends=self.server_sends,
            session_id=self.session_id,
        )

    def to_bytes(self) -> bytes:
        return json.dumps(asdict(self)).encode('utf-8')

    @classmethod
    def from_bytes(cls, binary_data: bytes) -> 'TestParameters':
        json_obj = _json_object(binary_data, 'Test parameters')
        try:
            return cls(
                flow_count=_json_int(json_obj, 'flow_count'),
                unit_count=_json_int(json_obj, 'unit_count'),
                unit_size=_json_int(json_obj, 'unit_size'),
                client_sends=_json_bool(json_obj, 'client_sends'),
                server_sends=_json_bool(json_obj, 'server_sends'),
                session_id=str(json_obj.get('session_id', '')),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f'Test parameters missing or invalid field: {e}')

    def __str__(self):
        return (f"flows={self.flow_count} units/flow={self.unit_count} unit_size={self.unit_size} "
                f"client_sends={self.client_sends} server_sends={self.server_sends} session={self.session_id}")


@dataclass
class StatisticsReport:
    """Timestamps observed by both ends of a test, microseconds since the epoch (0 = not observed)"""
    client_first_sent_us: int = 0
    client_last_sent_us: int = 0
    client_first_received_us: int = 0
    client_last_received_us: int = 0
    server_first_received_us: int = 0
    server_last_received_us: int = 0
    server_first_sent_us: int = 0
    server_last_sent_us: int = 0

    def to_bytes(self) -> bytes:
        return json.dumps(asdict(self)).encode('utf-8')

    @classmethod
    def from_bytes(cls, binary_data: bytes) -> 'StatisticsReport':
        json_obj = _json_object(binary_data, 'Statistics report')
        report = cls()
        try:
            for name in asdict(report):
                if name in json_obj:
                    setattr(report, name, _json_int(json_obj, name))
        except ValueError as e:
            raise ValueError(f'Statistics report has invalid field: {e}')
        return report


@dataclass
class ServerConfig:
    """Server configuration settings"""
    bind_addr: str = "0.0.0.0"
    bind_port: int = 6811
    max_flows: int = 10
    max_units_per_flow: int = 1000000
    max_unit_size: int = 1400  # bytes
    server_block_time: int = 100  # milliseconds
    send_sleep: int = 0  # microseconds
    test_verbose: bool = False  # Print test/debug messages


DEFAULT_CONFIG = """# flowband configuration file

# Transport bind settings
bind_addr=0.0.0.0
bind_port=6811

# Limits applied to requested test parameters
max_flows=10
max_units_per_flow=1000000
max_unit_size=1400

# Socket blocking time (milliseconds)
server_block_time=100

# Pause between data units sent by the server (microseconds)
send_sleep=0

# Print test/debug messages
test_verbose=false
"""


def load_config(config_path: Path) -> ServerConfig:
    """Load configuration from file"""
    config = ServerConfig()

    if not config_path.exists():
        return config

    int_keys = ('bind_port', 'max_flows', 'max_units_per_flow', 'max_unit_size',
                'server_block_time', 'send_sleep')
    try:
        with open(config_path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue

                if '=' in line:
                    key, value = line.split('=', 1)
                    key = key.strip()
                    # allow trailing comments
                    value = value.split('#', 1)[0].strip()

                    if key == 'bind_addr':
                        config.bind_addr = value
                    elif key in int_keys:
                        setattr(config, key, int(value))
                    elif key == 'test_verbose':
                        config.test_verbose = value.lower() in ('true', '1', 'yes')
    except (OSError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)

    return config


def create_default_config(config_path: Path) -> bool:
    """Create a default configuration file"""
    try:
        # Create directory if it doesn't exist
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w') as f:
            f.write(DEFAULT_CONFIG)

        print(f"Created default configuration file: {config_path}")
        return True
    except OSError as e:
        print(f"Error creating config file: {e}", file=sys.stderr)
        return False


def resolve_config_path(config_arg: Optional[str]) -> Path:
    """Resolve config path from argument - can be directory or full file path"""
    if config_arg is None:
        return Path.home() / '.flowband' / 'config'

    config_path = Path(config_arg).expanduser().resolve()

    # If it's an existing directory, append 'config' filename
    if config_path.is_dir():
        config_path = config_path / 'config'

    return config_path


class FlowIdManager:
    """Manages allocation of flow ids from the 3-byte id space"""

    def __init__(self, first_id: int = 1, last_id: int = MAX_FLOW_ID):
        self.first_id = first_id
        self.last_id = last_id
        self.used_ids = set()
        self.next_id = first_id
        self.lock = threading.Lock()

    def allocate(self) -> int:
        """Allocate an unused flow id, raises RuntimeError when none is left"""
        with self.lock:
            span = self.last_id - self.first_id + 1
            for _ in range(span):
                candidate = self.next_id
                self.next_id = candidate + 1 if candidate < self.last_id else self.first_id
                if candidate not in self.used_ids:
                    self.used_ids.add(candidate)
                    return candidate
            raise RuntimeError('No flow ids available')

    def release(self, flow_id: int):
        """Release a previously allocated flow id"""
        with self.lock:
            self.used_ids.discard(flow_id)
