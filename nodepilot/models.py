from __future__ import annotations

import hashlib
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

# Clamp limits applied to every metrics sample.
LATENCY_CLAMP_MS = 3000.0
JITTER_CLAMP_MS = 500.0
LOSS_CLAMP = 1.0
THROUGHPUT_SOFT_CAP_BPS = 50_000_000


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class NodeDescriptor(BaseModel):
    """A proxy node as handed over by the node pool."""

    id: str = Field(default="")
    address: str = Field(default="")
    probe_url: Optional[str] = None
    name: Optional[str] = None

    @model_validator(mode="after")
    def _derive_id(self) -> "NodeDescriptor":
        # A stable ID from the address when the source gives none.
        if not self.id and self.address:
            hasher = hashlib.sha256()
            hasher.update(self.address.encode("utf-8"))
            self.id = hasher.hexdigest()[:16]
        return self

    @property
    def host(self) -> str:
        return self.split_address()[0]

    def split_address(self, default_port: int = 80) -> Tuple[str, int]:
        """Split `host:port` (or `[v6]:port`) into its parts."""
        address = self.address.strip()
        if address.startswith("["):
            host, _, rest = address[1:].partition("]")
            port_str = rest.lstrip(":")
        elif address.count(":") == 1:
            host, _, port_str = address.partition(":")
        else:
            host, port_str = address, ""
        try:
            port = int(port_str) if port_str else default_port
        except ValueError:
            port = default_port
        return host, port

    @property
    def target_url(self) -> Optional[str]:
        if self.probe_url:
            return self.probe_url
        if self.address:
            return f"http://{self.address}"
        return None


@dataclass
class MetricsSample:
    """One probe measurement of a node."""

    latency_ms: float = 0.0
    jitter_ms: float = 0.0
    loss: float = 0.0
    bps: float = 0.0
    bytes: int = 0
    hard_fail: bool = False
    simulated: bool = False

    def clamped(self) -> "MetricsSample":
        """Return a copy with every measurement inside its documented range."""
        return MetricsSample(
            latency_ms=_clamp(float(self.latency_ms or 0), 0.0, LATENCY_CLAMP_MS),
            jitter_ms=_clamp(float(self.jitter_ms or 0), 0.0, JITTER_CLAMP_MS),
            loss=_clamp(float(self.loss or 0), 0.0, LOSS_CLAMP),
            bps=_clamp(float(self.bps or 0), 0.0, THROUGHPUT_SOFT_CAP_BPS),
            bytes=max(0, int(self.bytes or 0)),
            hard_fail=self.hard_fail,
            simulated=self.simulated,
        )

    @classmethod
    def failure(cls, timeout_ms: float, simulated: bool = False) -> "MetricsSample":
        """The worst-case record used for unreachable nodes."""
        return cls(
            latency_ms=timeout_ms,
            jitter_ms=100.0,
            loss=1.0,
            bps=0.0,
            bytes=0,
            hard_fail=not simulated,
            simulated=simulated,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricsSample":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class GeoInfo:
    country: str
    region: str

    def to_dict(self) -> Dict[str, str]:
        return {"country": self.country, "region": self.region}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeoInfo":
        return cls(
            country=str(data.get("country") or "Unknown"),
            region=str(data.get("region") or "Unknown"),
        )


LOCAL_GEO = GeoInfo(country="Local", region="Local")
UNKNOWN_GEO = GeoInfo(country="Unknown", region="Unknown")


@dataclass
class QualityEntry:
    timestamp: float
    score: int


@dataclass
class NodeStatus:
    """Everything the core knows about a node at the moment."""

    metrics: Optional[MetricsSample] = None
    initial_metrics: Optional[MetricsSample] = None
    score: Optional[int] = None
    geo: Optional[GeoInfo] = None
    availability_rate: float = 0.0
    last_evaluated: Optional[float] = None
    last_tested: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "initial_metrics": self.initial_metrics.to_dict() if self.initial_metrics else None,
            "score": self.score,
            "geo": self.geo.to_dict() if self.geo else None,
            "availability_rate": self.availability_rate,
            "last_evaluated": self.last_evaluated,
            "last_tested": self.last_tested,
        }


@dataclass
class SwitchEvent:
    old_node_id: Optional[str]
    new_node_id: str
    target_geo: Optional[GeoInfo] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def reason(self) -> str:
        return "quality" if self.old_node_id else "initial"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "old_node_id": self.old_node_id,
            "new_node_id": self.new_node_id,
            "target_geo": self.target_geo.to_dict() if self.target_geo else None,
            "reason": self.reason,
        }


@dataclass
class EvaluationResult:
    """Outcome of evaluating one node."""

    node_id: str
    metrics: MetricsSample
    score: int
    success: bool
    geo: Optional[GeoInfo] = None
    switched_to: Optional[str] = None
