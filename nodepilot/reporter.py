from __future__ import annotations

import datetime
from typing import Any, Dict

from .models import MetricsSample
from .scoring import format_remark


def generate_report(snapshot: Dict[str, Any]) -> str:
    """Generates a human-readable Markdown report from `CentralManager.snapshot()`."""
    nodes = snapshot.get("nodes", [])
    evaluated = [n for n in nodes if n.get("metrics")]
    healthy = [n for n in evaluated if not n["metrics"].get("hard_fail") and not n["metrics"].get("simulated")]
    current = snapshot.get("current_node")
    mirror = snapshot.get("mirror")

    report_lines = [
        "# Node Health Report",
        f"*Generated on: {datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}*",
        "",
        "## Summary",
        f"- **Known Nodes:** {len(nodes)}",
        f"- **Evaluated Nodes:** {len(evaluated)}",
        f"- **Healthy Nodes:** {len(healthy)}",
        f"- **Active Node:** {current or 'none'}",
        f"- **Mirror:** {'direct' if mirror == '' else (mirror or 'not selected')}",
        f"- **Average Latency:** {snapshot.get('average_latency_ms', 0.0):.2f} ms",
        "",
        "## Ranking",
        "| Rank | Node | Score | Availability | Region | Remark |",
        "|:----:|:-----|------:|-------------:|:-------|:-------|",
    ]

    ranked = sorted(nodes, key=lambda n: n.get("selection_score", 0.0), reverse=True)
    for i, node in enumerate(ranked, 1):
        label = node.get("name") or node["id"]
        if node["id"] == current:
            label = f"**{label}** (active)"
        geo = node.get("geo") or {}
        remark = (
            format_remark(MetricsSample.from_dict(node["metrics"]), node.get("score") or 0)
            if node.get("metrics") else "not evaluated"
        )
        report_lines.append(
            f"| {i} | {label} | {node.get('selection_score', 0.0):.2f} | "
            f"{node.get('availability_rate', 0.0):.0%} | {geo.get('region', '-')} | {remark} |"
        )

    return "\n".join(report_lines)
