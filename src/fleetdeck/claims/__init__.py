"""Work-item claim coordination over issue labels."""
