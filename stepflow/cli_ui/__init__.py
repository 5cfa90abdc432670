"""Terminal rendering helpers for the stepflow CLI."""
