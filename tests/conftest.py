"""Shared fixtures: a fake xray binary and a console that records output."""

import io
import stat
import sys
from pathlib import Path

import pytest
from rich.console import Console


XRAY_SCRIPT = """#!/bin/sh
case "$1" in
  version)
    echo "Xray 1.8.24 (Xray, Penetrates Everything.) Custom (go1.22.4 linux/amd64)"
    exit 0
    ;;
  -test)
    cat > /dev/null
{test_body}
    ;;
  run)
    cat > /dev/null
{run_body}
    ;;
esac
exit 2
"""

VALID_TEST = """    echo "Configuration OK."
    exit 0"""

READY_RUN = """    echo "Xray 1.8.24 (Xray, Penetrates Everything.) Custom (go1.22.4 linux/amd64)"
    echo "A unified platform for anti-censorship."
    exec sleep 30"""


@pytest.fixture
def make_xray(tmp_path):
    """Factory writing a fake xray shell script with the given -test and run behaviour."""
    if sys.platform == "win32":
        pytest.skip("fake xray is a POSIX shell script")

    def factory(run_body: str = READY_RUN, test_body: str = VALID_TEST, name: str = "xray") -> str:
        path = tmp_path / name
        path.write_text(XRAY_SCRIPT.format(test_body=test_body, run_body=run_body))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return factory


@pytest.fixture
def out():
    """Console that writes plain text to a buffer."""
    return Console(file=io.StringIO(), width=200, color_system=None, force_terminal=False)


@pytest.fixture
def config_file(tmp_path) -> Path:
    """An xray client config with a vless outbound and two local inbounds."""
    path = tmp_path / "config.json"
    path.write_text("""{
  "log": {"loglevel": "warning"},
  "inbounds": [
    {"tag": "socks-in", "port": 10808, "listen": "0.0.0.0", "protocol": "socks",
     "settings": {"udp": true}},
    {"tag": "http-in", "port": 10809, "listen": "0.0.0.0", "protocol": "http"},
    {"tag": "api", "port": 10085, "listen": "127.0.0.1", "protocol": "dokodemo-door",
     "settings": {"address": "127.0.0.1"}}
  ],
  "outbounds": [
    {"tag": "my-server", "protocol": "vless",
     "settings": {"vnext": [{"address": "example.com", "port": 8443,
                             "users": [{"id": "11111111-2222-3333-4444-555555555555", "encryption": "none"}]}]},
     "streamSettings": {"network": "ws", "security": "tls",
                        "sockopt": {"dialerProxy": "frag"}}},
    {"tag": "frag", "protocol": "freedom",
     "settings": {"fragment": {"packets": "1-3", "length": "10-20"}}},
    {"tag": "direct", "protocol": "freedom"}
  ]
}
""")
    return path
