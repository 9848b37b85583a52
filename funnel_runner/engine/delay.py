"""Delay resolution for funnel steps."""

import math
import random
import re
from typing import Optional

from funnel_runner.core.schema import DurationMode, FunnelStep

RAND_EXPR = re.compile(r"^rand\(\s*(\d+)\s*,\s*(\d+)\s*\)$", re.IGNORECASE)
RANGE_EXPR = re.compile(r"^(\d+)\s*\.\.\s*(\d+)$")
LITERAL_EXPR = re.compile(r"^\d+$")

# Humanized wait for sending steps that have nothing better configured
FALLBACK_MIN_SEC = 5
FALLBACK_MAX_SEC = 10


def _uniform(rng: random.Random, low: int, high: int) -> int:
    if low > high:
        low, high = high, low
    return rng.randint(low, high)


def parse_delay_expr(expr: Optional[str], rng: Optional[random.Random] = None) -> Optional[int]:
    """Evaluate `rand(a,b)`, `a..b` or a bare integer. None if it doesn't parse."""
    expr = (expr or "").strip()
    if not expr:
        return None

    rng = rng or random

    match = RAND_EXPR.match(expr) or RANGE_EXPR.match(expr)
    if match:
        return _uniform(rng, int(match.group(1)), int(match.group(2)))

    if LITERAL_EXPR.match(expr):
        return int(expr)

    return None


def resolve_delay_seconds(
    step: FunnelStep,
    default_delay_sec: Optional[float] = 0,
    is_sending_step: Optional[bool] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """Resolve how long to wait before a step's content goes out.

    Priority:
    1. manual `delay_sec`
    2. `delay_expr` (random range or literal)
    3. measured media duration, sending steps in "file" duration mode
    4. the integration default, if positive
    5. a random 5-10s for sending steps
    6. no wait
    """
    rng = rng or random
    if is_sending_step is None:
        is_sending_step = step.is_sending

    if step.delay_sec is not None:
        return max(float(step.delay_sec), 0.0)

    from_expr = parse_delay_expr(step.delay_expr, rng)
    if from_expr is not None:
        return float(from_expr)

    if (
        is_sending_step
        and step.media_duration_mode == DurationMode.FILE
        and step.media_duration_sec
        and step.media_duration_sec > 0
    ):
        return float(math.ceil(step.media_duration_sec))

    if default_delay_sec and default_delay_sec > 0:
        return float(default_delay_sec)

    if is_sending_step:
        return float(_uniform(rng, FALLBACK_MIN_SEC, FALLBACK_MAX_SEC))

    return 0.0
