"""Linear sleep-on-error helper for the sweep loop."""
from __future__ import annotations

from typing import Optional

from blocker.config import SWEEP_SETTINGS


def clamp_error_streak(consecutive_errors: int, *, max_steps: Optional[int] = None) -> int:
    """Keep the error counter within [0, max_steps]."""
    max_steps = int(max_steps if max_steps is not None else SWEEP_SETTINGS["sleep_on_err_steps"])
    return max(0, min(consecutive_errors, max_steps))


def compute_sleep_on_error(consecutive_errors: int, *, step: Optional[float] = None, max_steps: Optional[int] = None) -> float:
    """Seconds to sleep after `consecutive_errors` failed sweeps in a row.

    Grows linearly by `step` per error and stops growing after `max_steps`
    errors (10s, 20s, ... 60s, 60s, ... with the defaults).
    """
    step = float(step if step is not None else SWEEP_SETTINGS["sleep_on_err_step"])
    return step * clamp_error_streak(consecutive_errors, max_steps=max_steps)


__all__ = ["clamp_error_streak", "compute_sleep_on_error"]
