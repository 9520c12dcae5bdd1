"""Read-only deletion impact analysis."""

from cascade_engine.simulation.impact_analyzer import CascadeSet, ImpactAnalyzer, parse_ref

__all__ = ["CascadeSet", "ImpactAnalyzer", "parse_ref"]
