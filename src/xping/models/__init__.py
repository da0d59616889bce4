"""
xping Domain Models
"""

from .descriptor import (
    Provenance,
    ConnectionDescriptor,
    FragmentInfo,
    DerivedInput,
)
from .stats import PingStatistics, round_half_up

__all__ = [
    "Provenance",
    "ConnectionDescriptor",
    "FragmentInfo",
    "DerivedInput",
    "PingStatistics",
    "round_half_up",
]
