"""Predictive uncertainty, drift detection and exploration.

Modules:
    statistics: pure uncertainty, data quality, drift and UCB formulas
    calculator: UncertaintyCalculator, computes and stores metrics per entity/channel
    exploration: ExplorationService, explore-or-exploit decisions, parameters and decision log
"""

from aumos_outcome_learning.uncertainty.calculator import UncertaintyCalculator
from aumos_outcome_learning.uncertainty.exploration import ExplorationService

__all__ = ["ExplorationService", "UncertaintyCalculator"]
