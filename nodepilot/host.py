"""Optional host-platform bindings.

The core never assumes a host is present. `HostBindings` is the capability
interface with no-op defaults; a concrete host overrides what it supports.
`JsonFileHost` keeps the storage entries in a local JSON file so cached probe
and geo results survive restarts.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class HostBindings:
    """No-op host. Every method may be overridden independently."""

    def get_current_node(self) -> Optional[str]:
        return None

    def set_current_node(self, node_id: str) -> None:
        pass

    def get_node_list(self) -> Optional[List[Dict[str, Any]]]:
        return None

    def get_storage(self, key: str) -> Optional[str]:
        return None

    def set_storage(self, key: str, value: str) -> None:
        pass

    def set_node_status(self, node_id: str, status: Dict[str, Any]) -> None:
        pass

    def set_node_metrics(self, node_id: str, metrics: Dict[str, Any]) -> None:
        pass

    def set_node_quality(self, node_id: str, score: int) -> None:
        pass

    def notify(self, message: str) -> None:
        pass

    def on_ready(self, callback: Callable[[], Any]) -> bool:
        """Register a readiness hook. Returns False when the host has none."""
        return False

    def on_exit(self, callback: Callable[[], Any]) -> bool:
        return False

    def subscribe(self, event: str, callback: Callable[[], Any]) -> bool:
        """Forward a host event ("configChanged", "networkOnline")."""
        return False


def call_host(host: HostBindings, method: str, *args: Any, default: Any = None) -> Any:
    """Invoke a host binding, logging instead of raising on failure."""
    try:
        return getattr(host, method)(*args)
    except Exception as e:
        logger.warning(f"Host binding {method} failed: {e}")
        return default


class JsonFileHost(HostBindings):
    """A host whose only capability is key/value storage in a JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: Dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.info("Storage file not found. Starting with a clean slate.")
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                self._data = {str(k): str(v) for k, v in data.items()}
            logger.info(f"Loaded {len(self._data)} storage entries from {self.path}.")
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Error loading storage file: {e}. Starting fresh.")
            self._data = {}

    def get_storage(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_storage(self, key: str, value: str) -> None:
        self._data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._data), encoding="utf-8")
