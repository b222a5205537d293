"""Fleet snapshot aggregation, per-item detail and control actions."""
