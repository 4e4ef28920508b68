"""Adaptive health scoring and selection of proxy egress nodes."""

from .config import Config, load_config
from .orchestrator import CentralManager

__all__ = ["CentralManager", "Config", "load_config"]
__version__ = "2.0.0"
