"""Team presence and invites."""
