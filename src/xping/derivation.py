"""
Input derivation for xping.

Turns the single positional input (a vless:// share link or a path to an
xray JSON config) into a ConnectionDescriptor.
"""

import json
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qsl, unquote

import structlog

from .errors import InputNotRecognized, InvalidJSON, MalformedDescriptor, NoProxyOutbound
from .models import ConnectionDescriptor, DerivedInput, FragmentInfo, Provenance

logger = structlog.get_logger(__name__)

VLESS_SCHEME = "vless://"
PROXY_PROTOCOLS = ("vless", "vmess", "trojan")
DEFAULT_LABEL = "vless-config"


def _is_port_number(text: str) -> bool:
    """True for ASCII decimal digits only."""
    return text.isascii() and text.isdecimal()


def _mapping(value) -> dict:
    """A JSON object field, or an empty dict when absent or not an object."""
    return value if isinstance(value, dict) else {}


def parse_vless_url(url: str) -> ConnectionDescriptor:
    """
    Parse a vless:// share link.

    Layout: ``vless://<id>@<host>:<port>?<query>#<label>``. The query and
    the label are optional.

    Raises:
        MalformedDescriptor: id, host or port missing, or port not numeric
    """
    if not url[:len(VLESS_SCHEME)].lower() == VLESS_SCHEME:
        raise MalformedDescriptor(f"Not a vless:// URL: {url}")

    rest = url[len(VLESS_SCHEME):]
    rest, _, fragment = rest.partition("#")

    identity, at, server_part = rest.partition("@")
    if not at or not identity or not server_part:
        raise MalformedDescriptor("Failed to parse vless URL: expected <id>@<host>:<port>")

    server_and_port, _, query = server_part.partition("?")
    address, colon, port_text = server_and_port.rpartition(":")
    if not colon or not address:
        raise MalformedDescriptor("Failed to parse vless URL: missing host or port")
    if address.startswith("[") and address.endswith("]"):
        address = address[1:-1]
    if not address:
        raise MalformedDescriptor("Failed to parse vless URL: missing host")

    if not _is_port_number(port_text):
        raise MalformedDescriptor(f"Failed to parse vless URL: port is not numeric: {port_text!r}")
    port = int(port_text)
    if not 1 <= port <= 65535:
        raise MalformedDescriptor(f"Failed to parse vless URL: port out of range: {port}")

    params: dict[str, str] = {}
    for key, value in parse_qsl(query, keep_blank_values=True):
        # First occurrence wins
        params.setdefault(key, value)

    descriptor = ConnectionDescriptor(
        identity=unquote(identity),
        address=address,
        port=port,
        protocol="vless",
        encryption=params.get("encryption") or "none",
        security=params.get("security") or "tls",
        sni=params.get("sni") or "",
        fingerprint=params.get("fp") or params.get("fingerprint") or "",
        network=params.get("type") or "ws",
        host=params.get("host") or "",
        path=params.get("path") or "/",
        flow=params.get("flow") or "",
        alpn=params.get("alpn") or "",
        public_key=params.get("pbk") or "",
        short_id=params.get("sid") or "",
        spider_x=params.get("spx") or "",
        service_name=params.get("serviceName") or "",
        label=unquote(fragment) or DEFAULT_LABEL,
    )
    logger.debug("Parsed vless URL", endpoint=descriptor.endpoint, network=descriptor.network)
    return descriptor


def find_proxy_outbound(document: dict) -> Optional[dict]:
    """Return the first vless/vmess/trojan outbound, if any."""
    outbounds = document.get("outbounds")
    for outbound in outbounds if isinstance(outbounds, list) else []:
        if isinstance(outbound, dict) and outbound.get("protocol") in PROXY_PROTOCOLS:
            return outbound
    return None


def _server_entry(outbound: dict) -> dict:
    """First vnext (vless/vmess) or servers (trojan) entry of an outbound."""
    settings = _mapping(outbound.get("settings"))
    for key in ("vnext", "servers"):
        entries = settings.get(key)
        if isinstance(entries, list) and entries and isinstance(entries[0], dict):
            return entries[0]
    return {}


def extract_descriptor(outbound: dict) -> ConnectionDescriptor:
    """
    Project an xray outbound onto a descriptor.

    Values are passed through as-is; missing ones fall back to
    ``unknown``/``none``/``tcp``/``config-file``.

    Raises:
        MalformedDescriptor: the outbound has no numeric server port
    """
    server = _server_entry(outbound)
    stream = _mapping(outbound.get("streamSettings"))

    port = server.get("port")
    if isinstance(port, str) and _is_port_number(port):
        port = int(port)
    if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
        raise MalformedDescriptor(
            f"Outbound '{outbound.get('tag', 'unknown')}' has no valid server port",
            [f"port: {server.get('port', 'unknown')}"],
        )

    users = server.get("users") or []
    identity = ""
    if users and isinstance(users[0], dict):
        identity = str(users[0].get("id", ""))
    elif server.get("password"):
        identity = str(server["password"])

    return ConnectionDescriptor(
        identity=identity,
        address=str(server.get("address") or "unknown"),
        port=port,
        protocol=str(outbound.get("protocol") or "unknown"),
        security=str(stream.get("security") or "none"),
        network=str(stream.get("network") or "tcp"),
        label=str(outbound.get("tag") or "config-file"),
    )


def load_config_file(path: Path) -> dict:
    """
    Read and parse an xray JSON config.

    Raises:
        InvalidJSON: the file cannot be read or is not a well-formed JSON object
    """
    try:
        text = path.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as e:
        raise InvalidJSON(f"Failed to read config file: {path}", [str(e)]) from e

    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidJSON(f"Failed to read config file: {path}", [str(e)]) from e

    if not isinstance(document, dict):
        raise InvalidJSON(f"Failed to read config file: {path}", ["expected a JSON object"])
    return document


def derive(user_input: str) -> DerivedInput:
    """
    Derive a descriptor from a vless:// URL or a config file path.

    Raises:
        MalformedDescriptor, InputNotRecognized, InvalidJSON, NoProxyOutbound
    """
    if user_input[:len(VLESS_SCHEME)].lower() == VLESS_SCHEME:
        return DerivedInput(
            descriptor=parse_vless_url(user_input),
            provenance=Provenance.DIRECT_URL,
        )

    path = Path(user_input).expanduser()
    if not path.is_file():
        raise InputNotRecognized(
            "Input must be either a vless:// URL or a valid xray config file path",
            [f"Not found: {path.resolve()}"],
        )

    document = load_config_file(path)
    outbound = find_proxy_outbound(document)
    if outbound is None:
        raise NoProxyOutbound(
            "No valid proxy outbound found in config file",
            [f"Expected one of: {', '.join(PROXY_PROTOCOLS)}"],
        )

    logger.debug("Loaded config file", path=str(path), outbound=outbound.get("tag"))
    return DerivedInput(
        descriptor=extract_descriptor(outbound),
        provenance=Provenance.EXISTING_CONFIG,
        document=document,
    )


def detect_fragment(document: dict) -> FragmentInfo:
    """
    Report fragmentation already configured in an xray config.

    Looks for any outbound with ``settings.fragment`` first, then for the
    outbound the proxy outbound dials through (``sockopt.dialerProxy``).
    """
    outbounds = document.get("outbounds")
    outbounds = [o for o in outbounds if isinstance(o, dict)] if isinstance(outbounds, list) else []

    fragment = None
    for outbound in outbounds:
        settings = _mapping(outbound.get("settings"))
        if settings.get("fragment"):
            fragment = settings["fragment"]
            break

    if fragment is None:
        proxy = find_proxy_outbound(document) or {}
        sockopt = _mapping(_mapping(proxy.get("streamSettings")).get("sockopt"))
        dialer_tag = sockopt.get("dialerProxy")
        if dialer_tag:
            for outbound in outbounds:
                if outbound.get("tag") == dialer_tag:
                    fragment = _mapping(outbound.get("settings")).get("fragment")
                    break

    if not fragment or not isinstance(fragment, dict):
        return FragmentInfo(enabled=False)

    return FragmentInfo(
        enabled=True,
        packets=str(fragment.get("packets") or "unknown"),
        length=str(fragment.get("length") or "unknown"),
        interval=str(fragment.get("interval") or "unknown"),
    )
