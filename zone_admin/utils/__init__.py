"""Shared helpers for the zone admin app."""
