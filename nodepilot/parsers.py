"""Parsers for proxy configuration URIs.

Each supported link (vmess://, vless://, trojan://, ss://, socks5://, http://,
or a bare ``host:port``) is reduced to the `NodeDescriptor` the selection
engine works with: a stable id, the server address and a display name.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional
from urllib.parse import unquote, urlparse

from .models import NodeDescriptor

logger = logging.getLogger(__name__)

URI_SCHEMES = {"vless", "trojan", "ss", "socks", "socks5", "http", "https", "hysteria2", "tuic"}


def _format_address(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def parse_vmess_uri(uri: str) -> Optional[NodeDescriptor]:
    """Parses a vmess:// URI (base64 JSON body) into a node descriptor."""
    try:
        if not uri.startswith("vmess://"):
            return None
        body = uri[8:].split("#")[0].strip()
        padding = len(body) % 4
        if padding:
            body += "=" * (4 - padding)
        vmess_data = json.loads(base64.b64decode(body).decode("utf-8"))
        host = vmess_data["add"]
        port = int(vmess_data["port"])
        return NodeDescriptor(
            address=_format_address(host, port),
            name=vmess_data.get("ps") or None,
        )
    except (json.JSONDecodeError, binascii.Error, UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
        logger.warning(f"Could not parse vmess URI: {e}")
        return None


def parse_standard_uri(uri: str) -> Optional[NodeDescriptor]:
    """Parses `scheme://[userinfo@]host:port[?query][#name]` links."""
    try:
        parsed = urlparse(uri.strip())
        if parsed.scheme.lower() not in URI_SCHEMES:
            return None
        if not parsed.hostname or not parsed.port:
            return None
        name = unquote(parsed.fragment) if parsed.fragment else None
        return NodeDescriptor(address=_format_address(parsed.hostname, parsed.port), name=name)
    except ValueError as e:
        logger.warning(f"Could not parse URI {uri[:40]}...: {e}")
        return None


def parse_node_uri(uri: str) -> Optional[NodeDescriptor]:
    """Generic parser that delegates to scheme-specific parsers."""
    uri = uri.strip()
    if not uri or uri.startswith("#"):
        return None
    if uri.startswith("vmess://"):
        return parse_vmess_uri(uri)
    if "://" in uri:
        node = parse_standard_uri(uri)
        if node is None:
            logger.debug(f"Unsupported URI scheme for: {uri[:40]}...")
        return node
    # Bare host:port
    host, sep, port = uri.rpartition(":")
    if sep and host and port.isdigit():
        return NodeDescriptor(address=_format_address(host.strip("[]"), int(port)))
    return None


def parse_links(links: Iterable[str]) -> List[NodeDescriptor]:
    """Parses links into unique node descriptors, keeping first-seen order."""
    nodes: List[NodeDescriptor] = []
    seen = set()
    for link in links:
        node = parse_node_uri(link)
        if node is None or node.id in seen:
            continue
        seen.add(node.id)
        nodes.append(node)
    return nodes


def load_nodes_file(path: Path) -> List[NodeDescriptor]:
    """Reads one link per line from `path`. A missing file yields no nodes."""
    path = Path(path)
    if not path.is_file():
        logger.warning(f"Nodes file not found at {path}")
        return []
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        logger.error(f"Could not read nodes file {path}: {e}")
        return []
    return parse_links(lines)
