"""
TALLY - analytics event tally pipeline

Ingests raw analytics events, folds them into a running metrics
snapshot, and retires processed events into an archive with a
bounded retention window.
"""

__version__ = "0.1.0"
