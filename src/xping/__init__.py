"""
xping - VLESS latency probe built on Xray

Measures round-trip latency of HTTP requests sent through a VLESS proxy:
- Accepts a vless:// share link or an existing xray JSON config
- Runs xray locally on a free loopback port and supervises its startup
- Sends HEAD requests through it and reports ping-style statistics
"""

__version__ = "1.0.0"

from .errors import XpingError
from .models import ConnectionDescriptor, PingStatistics, Provenance
from .derivation import derive, parse_vless_url
from .synthesizer import build_config, rebind_config, find_free_port
from .supervisor import XraySupervisor, classify_line
from .prober import HttpProber, PingLoop

__all__ = [
    "XpingError",
    "ConnectionDescriptor",
    "PingStatistics",
    "Provenance",
    "derive",
    "parse_vless_url",
    "build_config",
    "rebind_config",
    "find_free_port",
    "XraySupervisor",
    "classify_line",
    "HttpProber",
    "PingLoop",
]
