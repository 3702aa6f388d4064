"""Outcome attribution and prediction staleness tracking.

Modules:
    policy: channel defaults and effective policy resolution
    credit: pure multi-touch credit, decay and confidence functions
    engine: AttributionEngine, records outcomes and splits credit across stimuli
    staleness: StalenessTracker, prediction age, validation and refresh recommendations
"""

from aumos_outcome_learning.attribution.engine import AttributionEngine
from aumos_outcome_learning.attribution.staleness import StalenessTracker

__all__ = ["AttributionEngine", "StalenessTracker"]
