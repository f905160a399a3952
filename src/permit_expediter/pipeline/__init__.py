"""Permit build pipeline: context aggregation, missing items and orchestration."""

from permit_expediter.pipeline.context_aggregator import AggregationResult, ContextAggregator
from permit_expediter.pipeline.missing_items import detect, merge, template_missing_items
from permit_expediter.pipeline.orchestrator import PermitBuildOrchestrator, compute_status

__all__ = [
    "AggregationResult",
    "ContextAggregator",
    "detect",
    "merge",
    "template_missing_items",
    "PermitBuildOrchestrator",
    "compute_status",
]
