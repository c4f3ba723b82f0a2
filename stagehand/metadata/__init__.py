"""Metadata store and environment/upgrade registries."""
