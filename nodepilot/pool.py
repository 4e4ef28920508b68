from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .models import NodeDescriptor

logger = logging.getLogger(__name__)


class NodePool:
    """The set of candidate nodes, in configured order."""

    def __init__(self, nodes: Optional[Iterable[NodeDescriptor]] = None):
        self._nodes: List[NodeDescriptor] = []
        self._by_id: Dict[str, NodeDescriptor] = {}
        self.replace(nodes or [])

    def replace(self, nodes: Iterable[NodeDescriptor]) -> None:
        unique: Dict[str, NodeDescriptor] = {}
        for node in nodes:
            if node.id and node.id not in unique:
                unique[node.id] = node
        self._nodes = list(unique.values())
        self._by_id = unique

    def replace_from_dicts(self, raw_nodes: Iterable[Dict[str, Any]]) -> int:
        """Replace the pool from host-provided descriptors, skipping invalid ones."""
        nodes = []
        for raw in raw_nodes:
            try:
                nodes.append(NodeDescriptor.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Ignoring invalid node descriptor {raw!r}: {e}")
        self.replace(nodes)
        return len(self._nodes)

    def nodes(self) -> List[NodeDescriptor]:
        return list(self._nodes)

    def get(self, node_id: str) -> Optional[NodeDescriptor]:
        return self._by_id.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._by_id

    def __len__(self) -> int:
        return len(self._nodes)
