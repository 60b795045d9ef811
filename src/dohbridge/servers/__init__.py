"""Downstream listeners."""
