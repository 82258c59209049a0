"""Access control and feed ranking for social events."""
