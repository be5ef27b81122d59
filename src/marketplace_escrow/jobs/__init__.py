"""Background jobs."""

from marketplace_escrow.jobs.auto_release import SweepSummary, run_sweep

__all__ = ["SweepSummary", "run_sweep"]
