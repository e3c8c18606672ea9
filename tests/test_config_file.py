#!/usr/bin/env python3
"""
Tests for the flowband key=value configuration file
"""

import sys
import os
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from flowband import ServerConfig, load_config, create_default_config, resolve_config_path
from flowband_server import build_parser, main, parse_addr_port, server_config_from_args


def test_missing_config_gives_defaults(tmp_path):
    config = load_config(tmp_path / "does-not-exist")
    assert config == ServerConfig()
    assert config.max_flows == 10
    print("✓ Missing config file gives defaults")


def test_create_default_config(tmp_path, capsys):
    config_path = tmp_path / "nested" / "config"
    assert create_default_config(config_path)
    assert config_path.exists()
    assert "Created default configuration file" in capsys.readouterr().out

    content = config_path.read_text()
    assert "max_flows=10" in content
    assert "bind_port=6811" in content
    assert load_config(config_path) == ServerConfig()
    print("✓ Default config file round-trips to the default settings")


def test_load_custom_config(tmp_path):
    config_path = tmp_path / "config"
    config_path.write_text("""# flowband configuration file
bind_addr=127.0.0.1
bind_port=7811

max_flows=4  # small tests only
max_units_per_flow=500
max_unit_size=256
server_block_time=20
send_sleep=250
test_verbose=yes
unknown_key=whatever
""")
    config = load_config(config_path)

    assert config.bind_addr == "127.0.0.1"
    assert config.bind_port == 7811
    assert config.max_flows == 4
    assert config.max_units_per_flow == 500
    assert config.max_unit_size == 256
    assert config.server_block_time == 20
    assert config.send_sleep == 250
    assert config.test_verbose is True
    print("✓ Custom config values are loaded")


def test_malformed_value_is_reported(tmp_path, capsys):
    config_path = tmp_path / "config"
    config_path.write_text("bind_port=7000\nmax_flows=lots\n")
    config = load_config(config_path)

    assert config.bind_port == 7000
    assert config.max_flows == 10
    assert "Error loading config" in capsys.readouterr().err
    print("✓ Malformed values are reported and defaults kept")


def test_resolve_config_path(tmp_path):
    assert resolve_config_path(None) == Path.home() / '.flowband' / 'config'
    assert resolve_config_path(str(tmp_path)) == tmp_path.resolve() / 'config'
    assert resolve_config_path(str(tmp_path / "custom.conf")) == (tmp_path / "custom.conf").resolve()
    print("✓ Config path can be a directory or a file")


def test_main_creates_config(tmp_path, capsys):
    config_path = tmp_path / "flowband.conf"
    assert main(['--config', str(config_path), '--create-config']) == 0
    assert config_path.exists()
    assert "Created default configuration file" in capsys.readouterr().out
    assert load_config(config_path) == ServerConfig()
    print("✓ --create-config writes the default file")


def test_command_line_overrides_config_file(tmp_path):
    config_path = tmp_path / "config"
    config_path.write_text("bind_port=7811\nmax_flows=3\n")
    args = build_parser().parse_args(['--config', str(config_path), '--server', '127.0.0.1:', '--test-verbose'])
    config = server_config_from_args(args, resolve_config_path(args.config))

    assert config.bind_addr == '127.0.0.1'
    assert config.bind_port == 7811
    assert config.max_flows == 3
    assert config.test_verbose is True
    print("✓ Command line overrides values from the config file")


def test_missing_config_file_is_reported(tmp_path, capsys):
    config_path = tmp_path / "missing.conf"
    args = build_parser().parse_args(['--config', str(config_path)])
    config = server_config_from_args(args, resolve_config_path(args.config))

    assert config == ServerConfig()
    assert "Config file not found" in capsys.readouterr().err
    print("✓ A missing config file falls back to defaults with a warning")


def test_parse_addr_port():
    assert parse_addr_port('10.0.0.1:7000') == ('10.0.0.1', 7000)
    assert parse_addr_port(':7000') == ('0.0.0.0', 7000)
    assert parse_addr_port('10.0.0.1') == ('10.0.0.1', 6811)
    assert parse_addr_port('10.0.0.1:', default_port=1234) == ('10.0.0.1', 1234)
    print("✓ Address and port parsing")
