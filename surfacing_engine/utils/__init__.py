"""Utilities for the surfacing engine (metrics, logging, hashing, locks)."""
