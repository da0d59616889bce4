"""
Connection descriptor models with strong typing using Pydantic.

A descriptor is the normalized "what to connect to and how", independent
of whether it came from a vless:// URL or an existing xray config file.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Provenance(str, Enum):
    """Where a descriptor came from."""
    DIRECT_URL = "direct-url"
    EXISTING_CONFIG = "existing-config"


class ConnectionDescriptor(BaseModel):
    """Normalized proxy target."""

    model_config = ConfigDict(frozen=True)

    identity: str = Field(
        default="",
        description="User id (UUID) presented to the server"
    )
    address: str = Field(
        ...,
        min_length=1,
        description="Server host"
    )
    port: int = Field(
        ...,
        ge=1,
        le=65535,
        description="Server port"
    )
    protocol: str = Field(
        default="vless",
        description="Outbound protocol"
    )
    encryption: str = Field(default="none")
    security: str = Field(
        default="tls",
        description="Transport security (none, tls, reality)"
    )
    sni: str = Field(default="", description="TLS server name")
    fingerprint: str = Field(default="", description="uTLS fingerprint")
    network: str = Field(
        default="ws",
        description="Transport type (ws, tcp, grpc, ...)"
    )
    host: str = Field(default="", description="Host header override")
    path: str = Field(default="/")
    flow: str = Field(default="")
    alpn: str = Field(default="")
    public_key: str = Field(default="", description="REALITY public key (pbk)")
    short_id: str = Field(default="", description="REALITY short id (sid)")
    spider_x: str = Field(default="", description="REALITY spiderX (spx)")
    service_name: str = Field(default="", description="gRPC service name")
    label: str = Field(
        default="vless-config",
        description="Display label"
    )

    @property
    def endpoint(self) -> str:
        """host:port for display, bracketing IPv6 literals."""
        if ":" in self.address:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"


class FragmentInfo(BaseModel):
    """Fragmentation parameters in effect for a run, for display."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    packets: Optional[str] = None
    length: Optional[str] = None
    interval: Optional[str] = None


class DerivedInput(BaseModel):
    """Result of deriving a descriptor from user input."""

    descriptor: ConnectionDescriptor
    provenance: Provenance
    document: Optional[dict] = Field(
        default=None,
        description="Loaded config document (existing-config provenance only)"
    )
