"""Assign beads to AI coding agents running in tmux panes."""

__version__ = "0.1.0"
