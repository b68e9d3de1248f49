"""State/view layer.

This package is the single source of truth for how fetched record lists
and realtime change notifications are merged into one deterministic,
time-ordered location view.
"""
