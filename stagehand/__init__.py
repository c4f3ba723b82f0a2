"""Stagehand: multi-phase on-chain upgrade coordinator."""

__version__ = "0.1.0"
