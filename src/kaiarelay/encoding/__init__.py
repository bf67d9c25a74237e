"""Canonical RLP encoding."""
