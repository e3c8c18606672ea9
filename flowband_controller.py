#!/usr/bin/env python3
"""
flowband test controller

Negotiates the parameters of a single test over its control flow, admits the
data flows of the test, tracks their completion and reports the aggregate
statistics when the test is stopped.

All external events (control SDUs, flow admission and deallocation, worker
completion reports) are posted to a per-session event queue and handled one
at a time by whichever thread finds the queue idle.
"""

import sys
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Callable

from flowband import (
    OpCode, ControlMessage, ControlCodec, TestParameters, StatisticsReport,
    ServerConfig, data_endpoint_name,
)


class TestState(Enum):
    """States of a test session"""
    AWAITING_CREATE = "AWAITING_CREATE"
    AWAITING_START  = "AWAITING_START"
    EXECUTING       = "EXECUTING"
    AWAITING_STOP   = "AWAITING_STOP"
    COMPLETED       = "COMPLETED"


@dataclass
class ThroughputRate:
    """Aggregate throughput of one direction of a test"""
    units_per_second: float
    bytes_per_second: float
    bits_per_second: float

    @property
    def kilobytes_per_second(self) -> float:
        return self.bytes_per_second / 1024

    @property
    def megabits_per_second(self) -> float:
        return self.bits_per_second / (1024 * 1024)


@dataclass
class TestResult:
    """Aggregate metrics computed when a test completes"""
    received: Optional[ThroughputRate] = None
    sent: Optional[ThroughputRate] = None
    client_server_delay_ms: Optional[float] = None
    server_client_delay_ms: Optional[float] = None
    rtt_ms: Optional[float] = None


def _throughput(parameters: TestParameters, first_ms: float, last_ms: float) -> Optional[ThroughputRate]:
    duration_ms = last_ms - first_ms
    if not first_ms or duration_ms <= 0:
        return None
    units_per_second = parameters.flow_count * parameters.unit_count * 1000.0 / duration_ms
    bytes_per_second = units_per_second * parameters.unit_size
    return ThroughputRate(units_per_second, bytes_per_second, bytes_per_second * 8)


def _one_way_delay(first_sent_ms: float, first_received_ms: float,
                   last_sent_ms: float, last_received_ms: float) -> Optional[float]:
    # 0 marks a timestamp that was never observed
    if not (first_sent_ms and first_received_ms and last_sent_ms and last_received_ms):
        return None
    return ((first_received_ms - first_sent_ms) + (last_received_ms - last_sent_ms)) / 2


def aggregate_statistics(parameters: TestParameters, report: StatisticsReport) -> TestResult:
    """Compute throughput and delay metrics from a merged statistics report.

    Every timestamp in the report is in microseconds; they are normalized to
    milliseconds before any rate or delay is computed, so both directions use
    the same scale factor.

    Args:
        parameters: The effective (clamped) test parameters
        report: Statistics carrying both client and server timestamps

    Returns:
        TestResult; a rate is None when its measurement window is not positive,
        a delay is None when one of its timestamps was not observed
    """
    ms = {name: value / 1000.0 for name, value in vars(report).items()}
    result = TestResult()

    if parameters.client_sends:
        result.received = _throughput(parameters, ms['server_first_received_us'], ms['server_last_received_us'])
        result.client_server_delay_ms = _one_way_delay(ms['client_first_sent_us'], ms['server_first_received_us'],
                                                       ms['client_last_sent_us'], ms['server_last_received_us'])

    if parameters.server_sends:
        result.sent = _throughput(parameters, ms['client_first_received_us'], ms['client_last_received_us'])
        result.server_client_delay_ms = _one_way_delay(ms['server_first_sent_us'], ms['client_first_received_us'],
                                                       ms['server_last_sent_us'], ms['client_last_received_us'])

    delays = [delay for delay in (result.client_server_delay_ms, result.server_client_delay_ms) if delay is not None]
    if len(delays) == 2:
        result.rtt_ms = delays[0] + delays[1]
    elif delays:
        result.rtt_ms = delays[0] * 2

    return result


class TestController:
    """Controls the negotiation of test parameters and the execution of a single test"""

    def __init__(self, session_id: int, control_flow, transport, config: ServerConfig,
                 worker_factory: Callable, on_finished: Optional[Callable] = None):
        """
        Initialize the controller.

        Args:
            session_id: Identifier of the session, taken from the control flow
            control_flow: Flow the client negotiates on (needs write_sdu)
            transport: Flow transport used for the data endpoint and data flows
            config: Server configuration (parameter maxima, verbosity)
            worker_factory: Called as worker_factory(parameters, flow, controller)
            on_finished: Called with this controller once it is completed and
                all of its data flows are gone
        """
        self.session_id = session_id
        self.control_flow = control_flow
        self.transport = transport
        self.config = config
        self.worker_factory = worker_factory
        self.on_finished = on_finished
        self.test_verbose = config.test_verbose

        self.state = TestState.AWAITING_CREATE
        self.test_parameters: Optional[TestParameters] = None
        self.data_endpoint: Optional[str] = None
        self.data_registration = None
        # Flow registry: flow_id -> worker
        self.allocated_flows: Dict[int, object] = {}
        self.stop_message: Optional[ControlMessage] = None
        self.result: Optional[TestResult] = None

        # Epoch times are in milliseconds
        self.epoch_time_first_sdu_received = 0
        self.epoch_time_last_sdu_received = 0
        self.completed_receives = 0
        self.epoch_time_first_sdu_sent = 0
        self.epoch_time_last_sdu_sent = 0
        self.completed_sends = 0

        self._events = deque()
        self._events_lock = threading.Lock()
        self._draining = False

    # -- event queue -------------------------------------------------------

    def _post(self, handler: Callable, *args):
        """Queue an event and drain the queue unless another thread is already draining it"""
        with self._events_lock:
            self._events.append((handler, args))
            if self._draining:
                return
            self._draining = True

        while True:
            with self._events_lock:
                if not self._events:
                    self._draining = False
                    return
                handler, args = self._events.popleft()
            try:
                handler(*args)
            except Exception as e:
                print(f"Test controller {self.session_id}: error in {handler.__name__}: {e}", file=sys.stderr)
                sys.stderr.flush()

    # -- entry points ------------------------------------------------------

    def sdu_delivered(self, sdu: bytes, sequence_number: int = 0):
        """Called with every SDU received on the control flow"""
        self._post(self._handle_sdu, sdu)

    def on_flow_allocation_request(self, event):
        """Accept every data flow requested on our endpoint, admission is decided afterwards"""
        try:
            flow = self.transport.accept_or_reject_flow(event, True)
        except (OSError, RuntimeError) as e:
            self._print_error(f"Problems accepting data flow from {event.peer_addr}: {e}")
            return
        if flow is not None:
            self._post(self._flow_allocated, flow)

    def on_flow_deallocated(self, flow_id: int):
        self._post(self._flow_deallocated, flow_id)

    def on_first_sent(self, epoch_time: int):
        self._post(self._set_first_sdu_sent, epoch_time)

    def on_last_sent(self, epoch_time: int):
        self._post(self._set_last_sdu_sent, epoch_time)

    def on_first_received(self, epoch_time: int):
        self._post(self._set_first_sdu_received, epoch_time)

    def on_last_received(self, epoch_time: int):
        self._post(self._set_last_sdu_received, epoch_time)

    def is_finished(self) -> bool:
        """True once the test is completed and all of its data flows are gone"""
        return self.state == TestState.COMPLETED and not self.allocated_flows

    # -- control messages --------------------------------------------------

    def _handle_sdu(self, sdu: bytes):
        try:
            message = ControlCodec.decode(sdu)
        except ValueError as e:
            self._print_error(f"Error decoding control message: {e}")
            return

        if self.test_verbose:
            print(f"Test controller {self.session_id}: received {message.op_code.name} invoke_id={message.invoke_id}", file=sys.stderr)
            sys.stderr.flush()

        if message.op_code == OpCode.CREATE:
            self._handle_create(message)
        elif message.op_code == OpCode.START:
            self._handle_start(message)
        elif message.op_code == OpCode.STOP:
            self._handle_stop(message)
        else:
            self._print_message(f"Received control message with wrong op code {message.op_code.name}, ignoring it.")

    def _handle_create(self, message: ControlMessage):
        """Clamp the requested parameters, register the data endpoint and reply"""
        if self.state != TestState.AWAITING_CREATE:
            self._print_message(f"Received CREATE while in {self.state.name} state. Ignoring it.")
            return

        if message.obj_value is None:
            self._print_message("The CREATE message did not contain test parameters. Ignoring it.")
            return

        try:
            requested = TestParameters.from_bytes(message.obj_value)
        except ValueError as e:
            self._print_error(f"Error decoding test parameters: {e}")
            return

        parameters = requested.clamp(self.config.max_flows, self.config.max_units_per_flow,
                                     self.config.max_unit_size)
        parameters.session_id = str(self.session_id)
        self.test_parameters = parameters

        self.data_endpoint = data_endpoint_name(self.session_id)
        try:
            self.data_registration = self.transport.register_endpoint(self.data_endpoint)
            self.transport.add_flow_acceptor(self.data_endpoint, self)
        except (OSError, RuntimeError, ValueError) as e:
            self._print_error(f"Problems registering data endpoint {self.data_endpoint}: {e}")

        self.state = TestState.AWAITING_START
        self._send_message(message.reply(parameters.to_bytes()))
        self._print_message("Waiting to START a new test with the following parameters.")
        self._print_message(str(parameters))

    def _handle_start(self, message: ControlMessage):
        """Tell every admitted worker to start its test"""
        if self.state != TestState.AWAITING_START:
            self._print_message(f"Received START while in {self.state.name} state. Ignoring it.")
            return

        for flow_id, worker in list(self.allocated_flows.items()):
            try:
                worker.execute()
            except (OSError, RuntimeError) as e:
                self._print_error(f"Problems starting worker of flow {flow_id}: {e}")

        self.state = TestState.EXECUTING
        self._print_message(f"Started test execution on {len(self.allocated_flows)} flows")

        # Completion reported before START still counts
        if self._completion_reached():
            self._change_to_wait_stop_state()

    def _handle_stop(self, message: ControlMessage):
        if self.state == TestState.EXECUTING:
            self.stop_message = message
            self._print_message("Received STOP while still EXECUTING. "
                                "Storing it and waiting to send/receive all test data.")
            return
        elif self.state != TestState.AWAITING_STOP:
            self._print_message(f"Received STOP while in {self.state.name} state. Ignoring it.")
            return

        self.stop_message = message
        self._finish_test()

    # -- completion tracking -----------------------------------------------

    def _accepts_completion_events(self, kind: str) -> bool:
        if self.test_parameters is None or self.state == TestState.COMPLETED:
            self._print_error(f"Ignoring {kind} report while in {self.state.name} state")
            return False
        return True

    def _set_first_sdu_sent(self, epoch_time: int):
        if not self._accepts_completion_events('first-sent'):
            return
        if self.epoch_time_first_sdu_sent == 0:
            self.epoch_time_first_sdu_sent = epoch_time

    def _set_first_sdu_received(self, epoch_time: int):
        if not self._accepts_completion_events('first-received'):
            return
        if self.epoch_time_first_sdu_received == 0:
            self.epoch_time_first_sdu_received = epoch_time

    def _set_last_sdu_sent(self, epoch_time: int):
        if not self._accepts_completion_events('last-sent'):
            return
        flow_count = self.test_parameters.flow_count
        if self.completed_sends >= flow_count:
            self._print_error(f"More last-sent reports than flows ({flow_count}), ignoring it")
            return

        self.completed_sends += 1
        if self.completed_sends == flow_count:
            self.epoch_time_last_sdu_sent = epoch_time
            if self._completion_reached():
                self._change_to_wait_stop_state()

    def _set_last_sdu_received(self, epoch_time: int):
        if not self._accepts_completion_events('last-received'):
            return
        flow_count = self.test_parameters.flow_count
        if self.completed_receives >= flow_count:
            self._print_error(f"More last-received reports than flows ({flow_count}), ignoring it")
            return

        self.completed_receives += 1
        if self.completed_receives == flow_count:
            self.epoch_time_last_sdu_received = epoch_time
            if self._completion_reached():
                self._change_to_wait_stop_state()

    def _completion_reached(self) -> bool:
        """Both applicable counters have reached the flow count, checked only while executing"""
        if self.state != TestState.EXECUTING:
            return False
        flow_count = self.test_parameters.flow_count
        sends_done = not self.test_parameters.server_sends or self.completed_sends == flow_count
        receives_done = not self.test_parameters.client_sends or self.completed_receives == flow_count
        return sends_done and receives_done

    def _change_to_wait_stop_state(self):
        self.state = TestState.AWAITING_STOP
        self._print_message("All test data sent/received, waiting for STOP")
        if self.stop_message is not None:
            self._finish_test()

    # -- finalization ------------------------------------------------------

    def _finish_test(self):
        """Reply to STOP with the merged statistics, report them and release the data endpoint"""
        stop_message = self.stop_message
        self.stop_message = None
        report = None

        try:
            if stop_message.obj_value is None:
                raise ValueError("STOP message carries no statistics")
            report = StatisticsReport.from_bytes(stop_message.obj_value)
            if self.test_parameters.client_sends:
                report.server_first_received_us = self.epoch_time_first_sdu_received * 1000
                report.server_last_received_us = self.epoch_time_last_sdu_received * 1000
            if self.test_parameters.server_sends:
                report.server_first_sent_us = self.epoch_time_first_sdu_sent * 1000
                report.server_last_sent_us = self.epoch_time_last_sdu_sent * 1000
        except ValueError as e:
            self._print_error(f"Problems decoding STOP statistics: {e}")
            report = None

        if report is not None:
            self._send_message(stop_message.reply(report.to_bytes()))
            try:
                self.result = aggregate_statistics(self.test_parameters, report)
                self._print_result(self.result)
            except (TypeError, ArithmeticError) as e:
                self._print_error(f"Problems computing aggregate statistics: {e}")

        try:
            self.transport.remove_flow_acceptor(self.data_endpoint)
            if self.data_registration is not None:
                self.transport.unregister_endpoint(self.data_registration)
        except (OSError, KeyError, RuntimeError) as e:
            self._print_error(f"Problems unregistering data endpoint {self.data_endpoint}: {e}")
        self.data_registration = None

        self.state = TestState.COMPLETED
        self._print_message("Test completed")
        self._check_finished()

    def _print_result(self, result: TestResult):
        parameters = self.test_parameters
        self._print_message("Aggregate bandwidth:")
        if parameters.client_sends:
            if result.received is None:
                self._print_message("Not enough received data to compute the received rate")
            else:
                self._print_message(f"Aggregate received SDUs per second: {result.received.units_per_second:.0f}")
                self._print_message(f"Aggregate received KiloBytes per second (KBps): {result.received.kilobytes_per_second:.2f}")
                self._print_message(f"Aggregate received Megabits per second (Mbps): {result.received.megabits_per_second:.2f}")
        if parameters.server_sends:
            if result.sent is None:
                self._print_message("Not enough sent data to compute the sent rate")
            else:
                self._print_message(f"Aggregate sent SDUs per second: {result.sent.units_per_second:.0f}")
                self._print_message(f"Aggregate sent KiloBytes per second (KBps): {result.sent.kilobytes_per_second:.2f}")
                self._print_message(f"Aggregate sent Megabits per second (Mbps): {result.sent.megabits_per_second:.2f}")
        if result.rtt_ms is not None:
            self._print_message(f"Estimated round-trip time (RTT) in ms: {result.rtt_ms:.2f}")

    # -- flow admission ----------------------------------------------------

    def _flow_allocated(self, flow):
        if self.state != TestState.AWAITING_START:
            self._print_message(f"New flow {flow.flow_id} allocated while in {self.state.name} state. Requesting deallocation.")
            self._request_deallocate(flow.flow_id)
            return

        if flow.flow_id in self.allocated_flows:
            self._print_error(f"Data flow {flow.flow_id} already admitted, ignoring it")
            return

        worker = self.worker_factory(self.test_parameters, flow, self)
        self.allocated_flows[flow.flow_id] = worker
        try:
            self.transport.add_deallocation_listener(flow.flow_id, self)
        except (KeyError, RuntimeError) as e:
            self._print_error(f"Problems subscribing to deallocation of flow {flow.flow_id}: {e}")
        self._print_message(f"Data flow {flow.flow_id} allocated")

    def _flow_deallocated(self, flow_id: int):
        # Registry entries are only dropped once the test is over
        if self.state == TestState.COMPLETED:
            self.allocated_flows.pop(flow_id, None)
            self._print_message(f"Data flow {flow_id} deallocated")

        try:
            self.transport.remove_deallocation_listener(flow_id)
        except KeyError:
            pass
        self._check_finished()

    def _check_finished(self):
        if self.is_finished() and self.on_finished is not None:
            self.on_finished(self)

    # -- collaborators -----------------------------------------------------

    def _request_deallocate(self, flow_id: int):
        try:
            self.transport.request_deallocate(flow_id)
        except (OSError, KeyError, RuntimeError) as e:
            self._print_error(f"Problems deallocating flow {flow_id}: {e}")

    def _send_message(self, message: ControlMessage):
        try:
            self.control_flow.write_sdu(ControlCodec.encode(message))
        except (OSError, ValueError, RuntimeError) as e:
            self._print_error(f"Problems sending {message.op_code.name} message: {e}")

    def _print_message(self, message: str):
        print(f"Test controller {self.session_id}: {message}")
        sys.stdout.flush()

    def _print_error(self, message: str):
        print(f"Test controller {self.session_id}: {message}", file=sys.stderr)
        sys.stderr.flush()
