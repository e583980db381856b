"""Per-session Flutter preview servers driven by a multi-stage task orchestrator."""

__version__ = "0.1.0"
