"""Step-to-percentage mapping used for job progress reporting.

The first three steps are reported with fixed buckets (25/50/75) regardless
of the total step count, which is what existing clients expect.  For runs
of three steps or fewer this means the reported sequence never reaches 100
before the job completes (e.g. ``n=2`` reports 25, 50), and for ``n=1`` the
only step reports 25.  The completed status always reports 100.
"""

from __future__ import annotations

import math

_FIXED_BUCKETS = {0: 0, 1: 25, 2: 50, 3: 75}


def calculate_progress(current_step: int, total_steps: int) -> int:
    """Return the progress percentage (0-100) after ``current_step`` steps.

    Args:
        current_step: Number of denoising steps completed so far.
        total_steps: Number of steps the run was configured for.

    Returns:
        Integer percentage in ``[0, 100]``.

    Raises:
        ValueError: If ``total_steps`` is less than 1.
    """
    if total_steps < 1:
        raise ValueError(f"total_steps must be at least 1, got {total_steps}")

    if current_step in _FIXED_BUCKETS:
        return _FIXED_BUCKETS[current_step]
    if current_step == total_steps:
        return 100

    # Round half up so 62.5% reports as 63, not 62.
    return min(math.floor(current_step / total_steps * 100 + 0.5), 100)
