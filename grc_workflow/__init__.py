"""
GRC Workflow Engine

Definition-driven workflow and approval orchestration for risk and compliance
records: ordered steps, multi-party approval quorums, and SLA timers driven by
an external clock.
"""

__version__ = "1.0.0"
