"""Delivery health grading and operational alerts."""

from .alerts import Alert, ClaimConflict, compute_alerts
from .dora import DoraGrades, DoraMetric, compute_dora

__all__ = ["Alert", "ClaimConflict", "DoraGrades", "DoraMetric", "compute_alerts", "compute_dora"]
