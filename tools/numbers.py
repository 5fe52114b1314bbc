import math


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (2.5 -> 3), unlike round()."""
    return int(math.floor(value + 0.5))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
