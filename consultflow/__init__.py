"""Tiered consultation orchestration: classify, route, consult, gate, escalate."""

__version__ = "0.1.0"
