"""Incident tracking driven by probe outcomes."""

from .incident_tracker import IncidentTracker, determine_severity

__all__ = ["IncidentTracker", "determine_severity"]
