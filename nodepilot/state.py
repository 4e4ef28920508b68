from __future__ import annotations

import time
from dataclasses import replace
from typing import Dict, Optional

from .host import HostBindings, call_host
from .models import NodeStatus


class AppState:
    """Per-node status map, mirrored to the host for UI sync."""

    def __init__(self, host: Optional[HostBindings] = None):
        self.host = host or HostBindings()
        self.nodes: Dict[str, NodeStatus] = {}
        self.last_updated = time.time()

    def get(self, node_id: str) -> NodeStatus:
        return self.nodes.get(node_id) or NodeStatus()

    def update_node_status(self, node_id: str, **fields) -> Optional[NodeStatus]:
        if not isinstance(node_id, str) or not node_id:
            return None
        status = replace(self.get(node_id), **fields)
        self.nodes[node_id] = status
        self.last_updated = time.time()
        call_host(self.host, "set_node_status", node_id, status.to_dict())
        return status
