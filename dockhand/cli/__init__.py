"""Dockhand command-line interface."""
