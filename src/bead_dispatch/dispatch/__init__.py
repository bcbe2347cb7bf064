"""Pane activity classification, admission control and batch planning."""
