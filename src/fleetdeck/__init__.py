"""fleetdeck - control plane for a fleet of autonomous pipeline workers."""

__version__ = "0.1.0"
