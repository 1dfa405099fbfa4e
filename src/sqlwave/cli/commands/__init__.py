"""sqlwave CLI commands."""
