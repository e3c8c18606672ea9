#!/usr/bin/env python3
"""
flowband Server - Multi-flow Bandwidth Test Server

Runs the UDP flow transport that carries control and data flows, and keeps
one test controller per client control flow.
"""

import argparse
import socket
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Dict, Callable

from flowband import (
    FrameType, FlowFrame, FlowIdManager, ServerConfig, TestParameters,
    CONTROL_ENDPOINT, __version__, load_config, create_default_config, resolve_config_path,
)
from flowband_controller import TestController, TestState


def epoch_ms() -> int:
    return int(time.time() * 1000)


def build_filler(length: int) -> bytes:
    """Generate dummy data of the target length"""
    alphabet_nums_symbols = b'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%^&*()_+-=[]{}|;:,.<>?/~`'
    repeats_needed = (length + len(alphabet_nums_symbols) - 1) // len(alphabet_nums_symbols)
    return (alphabet_nums_symbols * repeats_needed)[:length]


@dataclass
class FlowAllocationRequest:
    """An inbound request to allocate a flow to a registered endpoint"""
    endpoint: str
    peer_addr: Tuple[str, int]


@dataclass
class EndpointRegistration:
    """Handle returned by FlowTransport.register_endpoint"""
    endpoint: str


class Flow:
    """One allocated flow between the transport and a peer"""

    def __init__(self, flow_id: int, endpoint: str, peer_addr: Tuple[str, int], transport: 'FlowTransport'):
        self.flow_id = flow_id
        self.endpoint = endpoint
        self.peer_addr = peer_addr
        self.transport = transport
        self.sdu_listener: Optional[Callable] = None

    def write_sdu(self, data: bytes, sequence_number: int = 0):
        self.transport.write_sdu(self.flow_id, data, sequence_number)


class FlowTransport:
    """UDP transport multiplexing flows over a single socket"""

    def __init__(self, bind_addr: str = "0.0.0.0", bind_port: int = 6811, block_time: int = 100,
                 test_verbose: bool = False):
        self.bind_addr = bind_addr
        self.bind_port = bind_port
        self.block_time = block_time  # milliseconds
        self.test_verbose = test_verbose
        self.flow_ids = FlowIdManager()
        self.socket = None
        self.running = False
        self.thread = None
        self.lock = threading.RLock()
        self.endpoints = set()
        # endpoint name -> acceptor with on_flow_allocation_request(event)
        self.flow_acceptors: Dict[str, object] = {}
        # flow_id -> Flow
        self.flows: Dict[int, Flow] = {}
        # flow_id -> listener with on_flow_deallocated(flow_id)
        self.deallocation_listeners: Dict[int, object] = {}

    def start(self):
        """Bind the socket and start the receive thread"""
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4 * 1024 * 1024)
        except OSError:
            pass
        self.socket.bind((self.bind_addr, self.bind_port))
        self.bind_port = self.socket.getsockname()[1]

        # Set socket timeout based on block_time
        if self.block_time > 0:
            self.socket.settimeout(self.block_time / 1000)
        else:
            self.socket.setblocking(False)

        self.running = True
        self.thread = threading.Thread(target=self.transport_comm_loop, daemon=True)
        self.thread.start()

    def stop(self):
        """Stop the receive thread and close the socket"""
        self.running = False
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=2.0)
        if self.socket:
            self.socket.close()

    # -- endpoints ---------------------------------------------------------

    def register_endpoint(self, endpoint: str) -> EndpointRegistration:
        with self.lock:
            if endpoint in self.endpoints:
                raise ValueError(f'Endpoint {endpoint} already registered')
            self.endpoints.add(endpoint)
        if self.test_verbose:
            print(f"Transport registered endpoint {endpoint}", file=sys.stderr)
            sys.stderr.flush()
        return EndpointRegistration(endpoint)

    def unregister_endpoint(self, registration: EndpointRegistration):
        with self.lock:
            self.endpoints.remove(registration.endpoint)
        if self.test_verbose:
            print(f"Transport unregistered endpoint {registration.endpoint}", file=sys.stderr)
            sys.stderr.flush()

    def add_flow_acceptor(self, endpoint: str, acceptor):
        with self.lock:
            if endpoint not in self.endpoints:
                raise ValueError(f'Endpoint {endpoint} is not registered')
            self.flow_acceptors[endpoint] = acceptor

    def remove_flow_acceptor(self, endpoint: str):
        with self.lock:
            del self.flow_acceptors[endpoint]

    # -- flows -------------------------------------------------------------

    def accept_or_reject_flow(self, event: FlowAllocationRequest, accept: bool) -> Optional[Flow]:
        """Answer a flow allocation request, returning the new flow when accepted"""
        if not accept:
            self._send(FlowFrame.format_json_frame(FrameType.ALLOCATE_R, 0, 0,
                                                   {'endpoint': event.endpoint, 'result': -1}), event.peer_addr)
            return None

        with self.lock:
            flow_id = self.flow_ids.allocate()
            flow = Flow(flow_id, event.endpoint, event.peer_addr, self)
            self.flows[flow_id] = flow
        self._send(FlowFrame.format_json_frame(FrameType.ALLOCATE_R, flow_id, 0,
                                               {'endpoint': event.endpoint, 'result': 0}), event.peer_addr)
        if self.test_verbose:
            print(f"Transport allocated flow {flow_id} to {event.endpoint} for {event.peer_addr[0]}:{event.peer_addr[1]}", file=sys.stderr)
            sys.stderr.flush()
        return flow

    def request_deallocate(self, flow_id: int):
        """Deallocate a local flow and tell the peer"""
        flow = self._remove_flow(flow_id)
        if flow is None:
            raise KeyError(f'Unknown flow {flow_id}')
        self._send(FlowFrame.format_frame(FrameType.DEALLOCATE, flow_id, 0), flow.peer_addr)
        self._notify_deallocated(flow_id)

    def add_deallocation_listener(self, flow_id: int, listener):
        with self.lock:
            if flow_id not in self.flows:
                raise KeyError(f'Unknown flow {flow_id}')
            self.deallocation_listeners[flow_id] = listener

    def remove_deallocation_listener(self, flow_id: int):
        with self.lock:
            del self.deallocation_listeners[flow_id]

    def set_sdu_listener(self, flow_id: int, listener: Callable):
        with self.lock:
            self.flows[flow_id].sdu_listener = listener

    def write_sdu(self, flow_id: int, data: bytes, sequence_number: int = 0):
        with self.lock:
            flow = self.flows.get(flow_id)
        if flow is None:
            raise KeyError(f'Unknown flow {flow_id}')
        self._send(FlowFrame.format_frame(FrameType.SDU, flow_id, sequence_number, data), flow.peer_addr)

    def _remove_flow(self, flow_id: int) -> Optional[Flow]:
        with self.lock:
            flow = self.flows.pop(flow_id, None)
        if flow is not None:
            self.flow_ids.release(flow_id)
        return flow

    def _notify_deallocated(self, flow_id: int):
        with self.lock:
            listener = self.deallocation_listeners.get(flow_id)
        if listener is not None:
            listener.on_flow_deallocated(flow_id)

    def _send(self, frame: bytes, addr: Tuple[str, int]):
        self.socket.sendto(frame, addr)

    # -- receive loop ------------------------------------------------------

    def transport_comm_loop(self):
        """Main transport loop - receives frames and dispatches them"""
        while self.running:
            try:
                data, peer_addr = self.socket.recvfrom(65535)
            except socket.timeout:
                continue
            except BlockingIOError:
                time.sleep(0.001)
                continue
            except OSError as e:
                if self.running:
                    print(f"Error in transport loop: {e}", file=sys.stderr)
                    sys.stderr.flush()
                break

            try:
                self.handle_frame(data, peer_addr)
            except Exception as e:
                print(f"Error handling frame from {peer_addr[0]}:{peer_addr[1]}: {e}", file=sys.stderr)
                sys.stderr.flush()

    def handle_frame(self, data: bytes, peer_addr: Tuple[str, int]):
        try:
            frame_type, flow_id, sequence_number, payload = FlowFrame.parse_frame(data)
        except ValueError as e:
            if self.test_verbose:
                print(f"Transport dropped frame from {peer_addr[0]}:{peer_addr[1]}: {e}", file=sys.stderr)
                sys.stderr.flush()
            return

        if frame_type == FrameType.SDU:
            with self.lock:
                flow = self.flows.get(flow_id)
            if flow is None or flow.peer_addr != peer_addr:
                return
            if flow.sdu_listener is not None:
                flow.sdu_listener(payload, sequence_number)

        elif frame_type == FrameType.ALLOCATE:
            json_obj = FlowFrame.parse_json_body(payload) or {}
            endpoint = json_obj.get('endpoint')
            self.handle_allocate(str(endpoint), peer_addr)

        elif frame_type == FrameType.DEALLOCATE:
            with self.lock:
                flow = self.flows.get(flow_id)
            if flow is None or flow.peer_addr != peer_addr:
                return
            self._remove_flow(flow_id)
            if self.test_verbose:
                print(f"Transport flow {flow_id} deallocated by peer", file=sys.stderr)
                sys.stderr.flush()
            self._notify_deallocated(flow_id)

    def handle_allocate(self, endpoint: str, peer_addr: Tuple[str, int]):
        with self.lock:
            # Retransmitted request, answer it again
            for flow in self.flows.values():
                if flow.peer_addr == peer_addr and flow.endpoint == endpoint:
                    self._send(FlowFrame.format_json_frame(FrameType.ALLOCATE_R, flow.flow_id, 0,
                                                           {'endpoint': endpoint, 'result': 0}), peer_addr)
                    return
            acceptor = self.flow_acceptors.get(endpoint)

        event = FlowAllocationRequest(endpoint, peer_addr)
        if acceptor is None:
            if self.test_verbose:
                print(f"Transport rejected flow to unknown endpoint {endpoint}", file=sys.stderr)
                sys.stderr.flush()
            self.accept_or_reject_flow(event, False)
            return
        acceptor.on_flow_allocation_request(event)


class FlowWorker:
    """Sends and/or receives the data units of one data flow"""

    def __init__(self, parameters: TestParameters, flow: Flow, sink, send_sleep: int = 0):
        self.parameters = parameters
        self.flow = flow
        self.sink = sink
        self.send_sleep = send_sleep  # microseconds
        self.received_count = 0
        self.receive_done = False
        self.thread = None
        self.lock = threading.Lock()
        flow.sdu_listener = self.on_sdu

    def on_sdu(self, payload: bytes, sequence_number: int):
        """Count a received data unit, reporting the first and the last one"""
        if not self.parameters.client_sends:
            return
        with self.lock:
            if self.receive_done:
                return
            self.received_count += 1
            first = self.received_count == 1
            last = (self.received_count >= self.parameters.unit_count or
                    sequence_number == self.parameters.unit_count - 1)
            if last:
                self.receive_done = True

        now = epoch_ms()
        if first:
            self.sink.on_first_received(now)
        if last:
            self.sink.on_last_received(now)

    def execute(self):
        """Start sending, when the server is a sender"""
        if not self.parameters.server_sends or self.thread is not None:
            return
        self.thread = threading.Thread(target=self.send_loop, daemon=True)
        self.thread.start()

    def send_loop(self):
        data = build_filler(self.parameters.unit_size)
        for sequence_number in range(self.parameters.unit_count):
            try:
                self.flow.write_sdu(data, sequence_number)
            except (OSError, KeyError) as e:
                print(f"Error sending data unit {sequence_number} on flow {self.flow.flow_id}: {e}", file=sys.stderr)
                sys.stderr.flush()
                return
            if sequence_number == 0:
                self.sink.on_first_sent(epoch_ms())
            if self.send_sleep > 0:
                time.sleep(self.send_sleep / 1_000_000)
        self.sink.on_last_sent(epoch_ms())


class FlowbandServer:
    """Accepts control flows and keeps one TestController per session"""

    def __init__(self, config: ServerConfig):
        self.config = config
        self.transport = FlowTransport(config.bind_addr, config.bind_port, config.server_block_time,
                                       config.test_verbose)
        self.running = False
        self.registration = None
        # session_id -> TestController
        self.sessions: Dict[int, TestController] = {}
        self.sessions_lock = threading.Lock()

    def start(self):
        """Start the transport and listen for control flows"""
        self.transport.start()
        self.registration = self.transport.register_endpoint(CONTROL_ENDPOINT)
        self.transport.add_flow_acceptor(CONTROL_ENDPOINT, self)
        self.running = True
        print(f"Server started on {self.config.bind_addr}:{self.transport.bind_port}")
        sys.stdout.flush()

    def stop(self):
        """Stop the server"""
        self.running = False
        self.transport.stop()
        print("Server stopped")
        sys.stdout.flush()

    @property
    def bind_port(self) -> int:
        return self.transport.bind_port

    def create_worker(self, parameters: TestParameters, flow: Flow, controller: TestController) -> FlowWorker:
        return FlowWorker(parameters, flow, controller, self.config.send_sleep)

    def on_flow_allocation_request(self, event: FlowAllocationRequest):
        """A client opened a control flow: start a new test session"""
        try:
            flow = self.transport.accept_or_reject_flow(event, True)
        except (OSError, RuntimeError) as e:
            print(f"Failed to accept control flow from {event.peer_addr}: {e}", file=sys.stderr)
            sys.stderr.flush()
            return

        controller = TestController(flow.flow_id, flow, self.transport, self.config,
                                    self.create_worker, on_finished=self.session_finished)
        with self.sessions_lock:
            self.sessions[flow.flow_id] = controller
        self.transport.set_sdu_listener(flow.flow_id, controller.sdu_delivered)
        self.transport.add_deallocation_listener(flow.flow_id, self)
        print(f"Client connected: {event.peer_addr[0]}:{event.peer_addr[1]}, session {flow.flow_id}")
        sys.stdout.flush()

    def on_flow_deallocated(self, flow_id: int):
        """The control flow of a session went away"""
        with self.sessions_lock:
            controller = self.sessions.get(flow_id)
            # Nothing was registered before CREATE, so such a session can go too
            if controller is not None and (controller.is_finished() or
                                           controller.state == TestState.AWAITING_CREATE):
                del self.sessions[flow_id]
        try:
            self.transport.remove_deallocation_listener(flow_id)
        except KeyError:
            pass

        if controller is None:
            return
        if controller.is_finished() or controller.state == TestState.AWAITING_CREATE:
            print(f"Session {flow_id} closed")
        else:
            print(f"Control flow of session {flow_id} deallocated while in {controller.state.name} state", file=sys.stderr)
            sys.stderr.flush()
        sys.stdout.flush()

    def session_finished(self, controller: TestController):
        with self.sessions_lock:
            if self.sessions.get(controller.session_id) is controller:
                del self.sessions[controller.session_id]
        if self.config.test_verbose:
            print(f"Server removed session {controller.session_id}", file=sys.stderr)
            sys.stderr.flush()

    def wait_for_sessions_idle(self, timeout: float = 5.0) -> bool:
        """Wait until no session is left, returns False on timeout"""
        deadline = time.time() + timeout
        while time.time() < deadline:
            with self.sessions_lock:
                if not self.sessions:
                    return True
            time.sleep(0.05)
        with self.sessions_lock:
            return not self.sessions


def parse_addr_port(addr_port_str: str, default_addr: str = "0.0.0.0",
                    default_port: int = 6811) -> Tuple[str, int]:
    """Parse address:port string, handling missing values"""
    if ':' in addr_port_str:
        addr, port = addr_port_str.split(':', 1)
        return (addr or default_addr), (int(port) if port else default_port)
    return (addr_port_str or default_addr), default_port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='flowband - Multi-flow Bandwidth Test Server'
    )
    parser.add_argument(
        '--server',
        nargs='?',
        const='',
        metavar='[addr]:[port]',
        help='Bind address and port (default: from config, 0.0.0.0:6811)'
    )
    parser.add_argument(
        '--config',
        metavar='path',
        help='Path to config file or directory (default: ~/.flowband/config)'
    )
    parser.add_argument(
        '--create-config',
        action='store_true',
        help='Create a default config file and exit'
    )
    parser.add_argument(
        '--test-verbose',
        action='store_true',
        help='Print verbose test/debug messages for control messages (default: False)'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'flowband {__version__}'
    )
    return parser


def server_config_from_args(args: argparse.Namespace, config_path: Path) -> ServerConfig:
    """Load the config file if there is one and apply command line overrides"""
    if config_path.exists():
        config = load_config(config_path)
    else:
        config = ServerConfig()
        if args.config:
            print(f"Warning: Config file not found: {config_path}", file=sys.stderr)
            sys.stderr.flush()

    if args.server:
        config.bind_addr, config.bind_port = parse_addr_port(args.server, config.bind_addr, config.bind_port)
    if args.test_verbose:
        config.test_verbose = True
    return config


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config_path = resolve_config_path(args.config)

    if args.create_config:
        return 0 if create_default_config(config_path) else 1

    server = FlowbandServer(server_config_from_args(args, config_path))
    server.start()
    try:
        while server.running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nShutting down server...")
        server.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
