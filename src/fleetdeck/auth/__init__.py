"""Observer authentication."""
