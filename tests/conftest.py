import os
import sys

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from flowband import ServerConfig
from flowband_server import FlowbandServer


@pytest.fixture
def flowband_server():
    """Run a flowband server on an ephemeral loopback port"""
    config = ServerConfig(bind_addr='127.0.0.1', bind_port=0, server_block_time=50, send_sleep=1000)
    server = FlowbandServer(config)
    server.start()
    yield server
    server.stop()
