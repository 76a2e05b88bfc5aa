"""CLI module for gatebot."""
