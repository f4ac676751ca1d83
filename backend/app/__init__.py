"""Design exchange and telemetry service package."""
