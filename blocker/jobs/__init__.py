"""
Background jobs.
"""
from .sweeper import Sweeper, SweepOutcome, SweepState

__all__ = ["Sweeper", "SweepOutcome", "SweepState"]
