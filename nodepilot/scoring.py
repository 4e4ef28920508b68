from __future__ import annotations

import math

from .models import MetricsSample
from .types import ScoreBreakdown

THROUGHPUT_SCORE_MAX = 15


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_components(metrics: MetricsSample) -> ScoreBreakdown:
    """Turns a metrics sample into sub-scores and a 0-100 composite.

    Latency is worth up to 35 points, jitter and loss up to 25 each and
    throughput up to 15 on a log scale. Inputs are clamped first, so the
    composite never leaves [0, 100].
    """
    m = metrics.clamped()
    latency_score = max(0.0, min(35.0, 35 - m.latency_ms / 25))
    jitter_score = max(0.0, min(25.0, 25 - m.jitter_ms))
    loss_score = max(0.0, min(25.0, 25 * (1 - m.loss)))
    throughput_score = max(
        0, min(THROUGHPUT_SCORE_MAX, _round_half_up(math.log10(1 + m.bps) * 2))
    )
    total = latency_score + jitter_score + loss_score + throughput_score
    return ScoreBreakdown(
        latency_score=latency_score,
        jitter_score=jitter_score,
        loss_score=loss_score,
        throughput_score=throughput_score,
        metric_score=min(100, _round_half_up(total)),
    )


def format_remark(metrics: MetricsSample, score: float) -> str:
    """Creates a standardized remark, e.g., [S:85] 1.20MB/s 150ms."""
    kb_per_s = metrics.bps / 8 / 1024
    mb_per_s = kb_per_s / 1024
    thr_display = f"{mb_per_s:.2f}MB/s" if mb_per_s >= 1 else f"{int(kb_per_s)}KB/s"
    return f"[S:{int(score)}] {thr_display} {int(metrics.latency_ms)}ms"
