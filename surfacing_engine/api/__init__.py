"""HTTP API for the surfacing engine."""
