"""Upgrade state machine."""
