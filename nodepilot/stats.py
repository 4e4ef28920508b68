from __future__ import annotations

import math
from typing import List, Sequence


class RollingStats:
    """Moving average over the last `window_size` samples, O(1) per sample."""

    def __init__(self, window_size: int = 100):
        self.window_size = max(1, int(window_size))
        self._data: List[float] = [0.0] * self.window_size
        self._index = 0
        self.count = 0
        self.sum = 0.0

    def add(self, value: float) -> None:
        v = float(value or 0)
        if self.count < self.window_size:
            self.count += 1
            self.sum += v
        else:
            self.sum += v - self._data[self._index]
        self._data[self._index] = v
        self._index = (self._index + 1) % self.window_size

    @property
    def average(self) -> float:
        return self.sum / self.count if self.count else 0.0

    def reset(self) -> None:
        self._data = [0.0] * self.window_size
        self._index = 0
        self.count = 0
        self.sum = 0.0


class SuccessRateTracker:
    def __init__(self):
        self.success_count = 0
        self.total_count = 0
        self.hard_fail_streak = 0

    def record(self, success: bool, hard_fail: bool = False) -> None:
        self.total_count += 1
        if success:
            self.success_count += 1
            self.hard_fail_streak = 0
        elif hard_fail:
            self.hard_fail_streak += 1

    @property
    def rate(self) -> float:
        return self.success_count / self.total_count if self.total_count else 0.0

    def reset(self) -> None:
        self.success_count = 0
        self.total_count = 0
        self.hard_fail_streak = 0


def weighted_average(values: Sequence[float], weight_factor: float = 0.9) -> float:
    """Average where each older value weighs `weight_factor` times the next one."""
    if not values:
        return 0.0
    n = len(values)
    total = weight_sum = 0.0
    for idx, val in enumerate(values):
        weight = weight_factor ** (n - idx - 1)
        total += val * weight
        weight_sum += weight
    return total / weight_sum if weight_sum else 0.0


def std_dev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    avg = sum(values) / len(values)
    return math.sqrt(sum((v - avg) ** 2 for v in values) / len(values))


def trend(values: Sequence[float]) -> float:
    """Slope of a recency-weighted least-squares fit. Positive means rising."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_w = sum_x = sum_y = sum_xy = sum_x2 = 0.0
    for i, y in enumerate(values):
        w = (i + 1) / n
        sum_w += w
        sum_x += i * w
        sum_y += y * w
        sum_xy += i * y * w
        sum_x2 += i * i * w
    denominator = sum_w * sum_x2 - sum_x * sum_x
    return (sum_w * sum_xy - sum_x * sum_y) / denominator if denominator else 0.0


def percentile(values: Sequence[float], pct: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = (pct / 100) * (len(ordered) - 1)
    lower = math.floor(index)
    if lower == index:
        return ordered[int(index)]
    return ordered[lower] + (ordered[lower + 1] - ordered[lower]) * (index - lower)
