"""Command-line interface for swarmcore."""
