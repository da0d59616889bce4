"""
Xray config synthesis for xping.

Builds the JSON document handed to xray: either from scratch for a
vless:// URL, or by rebinding the local inbounds of a loaded config file
to free loopback ports.
"""

import asyncio
import copy
from typing import Iterable, Optional

import structlog

from .models import ConnectionDescriptor

logger = structlog.get_logger(__name__)

LOOPBACK = "127.0.0.1"
LOCAL_PROXY_PROTOCOLS = ("http", "mixed", "socks")

INBOUND_TAG = "http-proxy"
PROXY_TAG = "proxy"
DIRECT_TAG = "direct"
FRAGMENT_TAG = "fragment"

PATH_HOST_NETWORKS = ("ws", "httpupgrade", "xhttp", "splithttp")


async def find_free_port(host: str = LOOPBACK) -> int:
    """
    Find a free local TCP port.

    Binds an ephemeral listener, reads the port the OS assigned and
    closes it again.
    """
    server = await asyncio.start_server(lambda reader, writer: None, host=host, port=0)
    try:
        port = server.sockets[0].getsockname()[1]
    finally:
        server.close()
        await server.wait_closed()
    logger.debug("Found free port", host=host, port=port)
    return port


def _tls_settings(descriptor: ConnectionDescriptor) -> dict:
    settings = {
        "allowInsecure": False,
        "serverName": descriptor.sni,
        "fingerprint": descriptor.fingerprint,
    }
    if descriptor.alpn:
        settings["alpn"] = [a for a in descriptor.alpn.split(",") if a]
    return settings


def _reality_settings(descriptor: ConnectionDescriptor) -> dict:
    return {
        "serverName": descriptor.sni,
        "fingerprint": descriptor.fingerprint or "chrome",
        "publicKey": descriptor.public_key,
        "shortId": descriptor.short_id,
        "spiderX": descriptor.spider_x,
    }


def build_stream_settings(descriptor: ConnectionDescriptor, fragment_enabled: bool) -> dict:
    """Stream settings for the proxy outbound; transport keys only where the transport uses them."""
    stream: dict = {
        "network": descriptor.network,
        "security": descriptor.security,
    }

    if descriptor.security == "tls":
        stream["tlsSettings"] = _tls_settings(descriptor)
    elif descriptor.security == "reality":
        stream["realitySettings"] = _reality_settings(descriptor)

    if descriptor.network == "ws":
        stream["wsSettings"] = {
            "path": descriptor.path,
            "headers": {"Host": descriptor.host},
        }
    elif descriptor.network == "httpupgrade":
        stream["httpupgradeSettings"] = {
            "path": descriptor.path,
            "host": descriptor.host,
        }
    elif descriptor.network in ("xhttp", "splithttp"):
        stream[f"{descriptor.network}Settings"] = {
            "path": descriptor.path,
            "host": descriptor.host,
        }
    elif descriptor.network == "grpc":
        stream["grpcSettings"] = {
            "serviceName": descriptor.service_name or descriptor.path.lstrip("/"),
        }

    if fragment_enabled:
        stream["sockopt"] = {"dialerProxy": FRAGMENT_TAG}

    return stream


def build_config(
    descriptor: ConnectionDescriptor,
    proxy_port: int,
    fragment_enabled: bool = False,
    fragment: Optional[dict] = None,
) -> dict:
    """
    Build a complete xray config for a vless:// descriptor.

    Args:
        descriptor: Parsed connection descriptor
        proxy_port: Free loopback port for the local HTTP inbound
        fragment_enabled: Route the proxy outbound through the fragment outbound
        fragment: packets/length/interval values used when fragmentation is on

    Returns:
        xray config document
    """
    user = {
        "id": descriptor.identity,
        "email": "ping@test.com",
        "encryption": descriptor.encryption,
    }
    if descriptor.flow:
        user["flow"] = descriptor.flow

    fragment_settings: dict = {}
    if fragment_enabled:
        fragment = fragment or {}
        fragment_settings = {
            "fragment": {
                "packets": fragment.get("packets", "tlshello"),
                "length": fragment.get("length", "5-9"),
                "interval": fragment.get("interval", "1-2"),
            }
        }

    return {
        "log": {
            "loglevel": "error"
        },
        "dns": {
            "servers": [
                "8.8.8.8",
                "1.1.1.1"
            ]
        },
        "inbounds": [
            {
                "tag": INBOUND_TAG,
                "port": proxy_port,
                "listen": LOOPBACK,
                "protocol": "http",
                "settings": {
                    "auth": "noauth",
                    "allowTransparent": False
                }
            }
        ],
        "outbounds": [
            {
                "tag": PROXY_TAG,
                "protocol": "vless",
                "settings": {
                    "vnext": [
                        {
                            "address": descriptor.address,
                            "port": descriptor.port,
                            "users": [user]
                        }
                    ]
                },
                "streamSettings": build_stream_settings(descriptor, fragment_enabled),
                "mux": {
                    "enabled": False,
                    "concurrency": 8
                }
            },
            {
                "tag": DIRECT_TAG,
                "protocol": "freedom",
                "settings": {
                    "domainStrategy": "AsIs",
                    "userLevel": 0
                }
            },
            {
                "tag": FRAGMENT_TAG,
                "protocol": "freedom",
                "settings": fragment_settings
            }
        ],
        "routing": {
            "domainStrategy": "AsIs",
            "rules": [
                {
                    "type": "field",
                    "inboundTag": [INBOUND_TAG],
                    "outboundTag": PROXY_TAG
                }
            ]
        }
    }


def local_inbounds(document: dict) -> list[dict]:
    """Inbounds of a config that accept local proxy traffic (http, mixed, socks)."""
    inbounds = document.get("inbounds")
    return [
        inbound for inbound in (inbounds if isinstance(inbounds, list) else [])
        if isinstance(inbound, dict) and inbound.get("protocol") in LOCAL_PROXY_PROTOCOLS
    ]


def rebind_config(document: dict, ports: Iterable[int]) -> dict:
    """
    Copy a loaded config and rebind its local inbounds to loopback.

    The n-th local inbound gets the n-th port. Port and listen address are
    the only keys changed; the input document is not modified.

    Args:
        document: Config document loaded from disk
        ports: Free ports, at least one per local inbound

    Returns:
        The rebound copy
    """
    rebound = copy.deepcopy(document)
    port_iter = iter(ports)
    for inbound in local_inbounds(rebound):
        inbound["port"] = next(port_iter)
        inbound["listen"] = LOOPBACK
        logger.debug(
            "Rebound inbound",
            tag=inbound.get("tag"),
            protocol=inbound.get("protocol"),
            port=inbound["port"],
        )
    return rebound


def probe_proxy_url(document: dict) -> Optional[str]:
    """
    Proxy URL the probe should use for a config's first local inbound.

    http and mixed inbounds are spoken to as HTTP proxies, socks ones as SOCKS5.
    """
    inbounds = local_inbounds(document)
    if not inbounds:
        return None
    inbound = inbounds[0]
    scheme = "socks5" if inbound.get("protocol") == "socks" else "http"
    return f"{scheme}://{LOOPBACK}:{inbound['port']}"
