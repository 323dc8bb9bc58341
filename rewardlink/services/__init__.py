"""Service layer for RewardLink.

Provides the interactive-post engine, its entry pipeline and reconciler,
and the adapters they use to reach Discord and the rewards backend.
"""

from rewardlink.services.backend_client import BackendClient, BackendError
from rewardlink.services.engine import InteractionEvent, InteractivePostEngine, Operator
from rewardlink.services.entry_pipeline import EntryPipeline, EntryRequest, EntryResult
from rewardlink.services.metrics import MetricsRegistry
from rewardlink.services.reconciler import Reconciler, ReconcilerSettings
from rewardlink.services.retention import RetentionSweeper

__all__ = [
    "BackendClient",
    "BackendError",
    "EntryPipeline",
    "EntryRequest",
    "EntryResult",
    "InteractionEvent",
    "InteractivePostEngine",
    "MetricsRegistry",
    "Operator",
    "Reconciler",
    "ReconcilerSettings",
    "RetentionSweeper",
]
