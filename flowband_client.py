#!/usr/bin/env python3
"""
flowband Client - Multi-flow Bandwidth Test Client

Negotiates a test with a flowband server over a control flow, opens the
negotiated number of data flows, moves the data units and sends STOP with
its own timestamps to obtain the merged statistics.
"""

import queue
import socket
import sys
import threading
import time
from typing import Optional, Tuple, List, Callable

from flowband import (
    FrameType, FlowFrame, OpCode, ControlMessage, ControlCodec,
    TestParameters, StatisticsReport, CONTROL_ENDPOINT, data_endpoint_name,
)


def epoch_us() -> int:
    return int(time.time() * 1_000_000)


class ClientFlow:
    """Client end of one flow, using its own UDP socket"""

    def __init__(self, server_addr: str, server_port: int, endpoint: str, block_time: int = 100,
                 test_verbose: bool = False):
        self.server = (server_addr, server_port)
        self.endpoint = endpoint
        self.block_time = block_time  # milliseconds
        self.test_verbose = test_verbose
        self.flow_id = None
        self.running = False
        self.deallocated = False
        self.thread = None
        self.sdu_callback: Optional[Callable] = None
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4 * 1024 * 1024)
        except OSError:
            pass
        self.socket.settimeout(max(self.block_time, 1) / 1000)

    def allocate(self, attempts: int = 5) -> bool:
        """Request the flow, resending the request every block_time"""
        request = FlowFrame.format_json_frame(FrameType.ALLOCATE, 0, 0, {'endpoint': self.endpoint})
        for attempt in range(attempts):
            self.socket.sendto(request, self.server)
            deadline = time.time() + max(self.block_time, 1) / 1000
            while time.time() < deadline:
                try:
                    data, _ = self.socket.recvfrom(65535)
                except socket.timeout:
                    break
                try:
                    frame_type, flow_id, _, payload = FlowFrame.parse_frame(data)
                except ValueError:
                    continue
                if frame_type != FrameType.ALLOCATE_R:
                    continue
                json_obj = FlowFrame.parse_json_body(payload) or {}
                if json_obj.get('result', -1) != 0:
                    print(f"Flow allocation to {self.endpoint} rejected", file=sys.stderr)
                    sys.stderr.flush()
                    return False
                self.flow_id = flow_id
                if self.test_verbose:
                    print(f"Client allocated flow {flow_id} to {self.endpoint}", file=sys.stderr)
                    sys.stderr.flush()
                return True

        print(f"Timeout allocating flow to {self.endpoint}", file=sys.stderr)
        sys.stderr.flush()
        return False

    def start_receiving(self, sdu_callback: Callable):
        self.sdu_callback = sdu_callback
        self.running = True
        self.thread = threading.Thread(target=self.receive_loop, daemon=True)
        self.thread.start()

    def receive_loop(self):
        while self.running:
            try:
                data, _ = self.socket.recvfrom(65535)
            except socket.timeout:
                continue
            except OSError:
                break
            try:
                frame_type, flow_id, sequence_number, payload = FlowFrame.parse_frame(data)
            except ValueError:
                continue
            if flow_id != self.flow_id:
                continue
            if frame_type == FrameType.SDU:
                self.sdu_callback(payload, sequence_number)
            elif frame_type == FrameType.DEALLOCATE:
                self.deallocated = True
                self.running = False

    def write_sdu(self, data: bytes, sequence_number: int = 0):
        self.socket.sendto(FlowFrame.format_frame(FrameType.SDU, self.flow_id, sequence_number, data), self.server)

    def deallocate(self):
        """Release the flow at the server and close the socket"""
        if self.flow_id is not None and not self.deallocated:
            try:
                self.socket.sendto(FlowFrame.format_frame(FrameType.DEALLOCATE, self.flow_id, 0), self.server)
            except OSError as e:
                print(f"Error deallocating flow {self.flow_id}: {e}", file=sys.stderr)
                sys.stderr.flush()
            self.deallocated = True
        self.close()

    def close(self):
        self.running = False
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=1.0)
        self.socket.close()


class FlowbandClient:
    """Runs bandwidth tests against a flowband server"""

    def __init__(self, server_addr: str, server_port: int, block_time: int = 100, send_sleep: int = 0,
                 test_verbose: bool = False):
        self.server_addr = server_addr
        self.server_port = server_port
        self.block_time = block_time  # milliseconds
        self.send_sleep = send_sleep  # microseconds
        self.test_verbose = test_verbose
        self.invoke_id = 0
        self.lock = threading.Lock()
        self.statistics = StatisticsReport()

    def next_invoke_id(self) -> int:
        self.invoke_id += 1
        return self.invoke_id

    def record_sent(self, first: bool, epoch_time: int):
        with self.lock:
            if first:
                if self.statistics.client_first_sent_us == 0 or epoch_time < self.statistics.client_first_sent_us:
                    self.statistics.client_first_sent_us = epoch_time
            else:
                self.statistics.client_last_sent_us = max(self.statistics.client_last_sent_us, epoch_time)

    def record_received(self, first: bool, epoch_time: int):
        with self.lock:
            if first:
                if self.statistics.client_first_received_us == 0 or epoch_time < self.statistics.client_first_received_us:
                    self.statistics.client_first_received_us = epoch_time
            else:
                self.statistics.client_last_received_us = max(self.statistics.client_last_received_us, epoch_time)

    def run_test(self, parameters: TestParameters, timeout: float = 30.0) -> Optional[Tuple[TestParameters, StatisticsReport]]:
        """
        Run one test.

        Args:
            parameters: Requested test parameters
            timeout: Seconds to wait for replies and for the data to arrive

        Returns:
            (effective parameters, merged statistics) or None on failure
        """
        self.statistics = StatisticsReport()
        print(f"Connecting to server {self.server_addr}:{self.server_port}")
        sys.stdout.flush()

        control = ClientFlow(self.server_addr, self.server_port, CONTROL_ENDPOINT, self.block_time, self.test_verbose)
        if not control.allocate():
            control.close()
            return None
        replies = queue.Queue()
        control.start_receiving(lambda payload, sequence_number: replies.put(payload))

        data_flows: List[ClientFlow] = []
        try:
            create = ControlMessage(OpCode.CREATE, self.next_invoke_id(), 'test parameters', '/flowband/test',
                                    parameters.to_bytes())
            reply = self.send_and_wait(control, replies, create, OpCode.CREATE_R, timeout)
            if reply is None or reply.obj_value is None:
                return None
            effective = TestParameters.from_bytes(reply.obj_value)
            print(f"Test parameters accepted: {effective}")
            sys.stdout.flush()

            endpoint = data_endpoint_name(effective.session_id)
            for _ in range(effective.flow_count):
                flow = ClientFlow(self.server_addr, self.server_port, endpoint, self.block_time, self.test_verbose)
                data_flows.append(flow)
                if not flow.allocate():
                    return None

            done_events = [self.start_flow_receiver(flow, effective) for flow in data_flows]

            start = ControlMessage(OpCode.START, self.next_invoke_id(), 'test', '/flowband/test')
            control.write_sdu(ControlCodec.encode(start))

            senders = []
            if effective.client_sends:
                for flow in data_flows:
                    sender = threading.Thread(target=self.send_units, args=(flow, effective), daemon=True)
                    sender.start()
                    senders.append(sender)
            deadline = time.time() + timeout
            for sender in senders:
                sender.join(timeout=max(0.0, deadline - time.time()))
            for done in done_events:
                if not done.wait(timeout=max(0.0, deadline - time.time())):
                    print("Timeout waiting for test data from server", file=sys.stderr)
                    sys.stderr.flush()
                    break

            with self.lock:
                statistics = StatisticsReport(**vars(self.statistics))
            stop = ControlMessage(OpCode.STOP, self.next_invoke_id(), 'statistics', '/flowband/statistics',
                                  statistics.to_bytes())
            reply = self.send_and_wait(control, replies, stop, OpCode.STOP_R, timeout)
            if reply is None or reply.obj_value is None:
                return None
            return effective, StatisticsReport.from_bytes(reply.obj_value)
        except (OSError, ValueError) as e:
            print(f"Error running test: {e}", file=sys.stderr)
            sys.stderr.flush()
            return None
        finally:
            for flow in data_flows:
                flow.deallocate()
            control.deallocate()

    def send_and_wait(self, control: ClientFlow, replies: queue.Queue, message: ControlMessage,
                      reply_op_code: OpCode, timeout: float) -> Optional[ControlMessage]:
        """Send a control message and wait for its reply"""
        control.write_sdu(ControlCodec.encode(message))
        if self.test_verbose:
            print(f"Client sent {message.op_code.name} invoke_id={message.invoke_id}", file=sys.stderr)
            sys.stderr.flush()

        deadline = time.time() + timeout
        while time.time() < deadline:
            try:
                payload = replies.get(timeout=max(0.0, deadline - time.time()))
            except queue.Empty:
                break
            try:
                reply = ControlCodec.decode(payload)
            except ValueError as e:
                print(f"Error decoding control message: {e}", file=sys.stderr)
                sys.stderr.flush()
                continue
            if reply.op_code == reply_op_code and reply.invoke_id == message.invoke_id:
                return reply

        print(f"Timeout waiting for {reply_op_code.name}", file=sys.stderr)
        sys.stderr.flush()
        return None

    def start_flow_receiver(self, flow: ClientFlow, parameters: TestParameters) -> threading.Event:
        """Start counting the data units the server sends on a flow"""
        done = threading.Event()
        if not parameters.server_sends:
            done.set()
        counter = {'received': 0}

        def on_sdu(payload: bytes, sequence_number: int):
            if done.is_set():
                return
            now = epoch_us()
            counter['received'] += 1
            if counter['received'] == 1:
                self.record_received(True, now)
            if counter['received'] >= parameters.unit_count or sequence_number == parameters.unit_count - 1:
                self.record_received(False, now)
                done.set()

        flow.start_receiving(on_sdu)
        return done

    def send_units(self, flow: ClientFlow, parameters: TestParameters):
        data = bytes(parameters.unit_size)
        for sequence_number in range(parameters.unit_count):
            try:
                flow.write_sdu(data, sequence_number)
            except OSError as e:
                print(f"Error sending data unit on flow {flow.flow_id}: {e}", file=sys.stderr)
                sys.stderr.flush()
                return
            if sequence_number == 0:
                self.record_sent(True, epoch_us())
            if self.send_sleep > 0:
                time.sleep(self.send_sleep / 1_000_000)
        self.record_sent(False, epoch_us())
