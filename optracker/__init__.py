"""
Operations Tracker: long-running operation tracking service and client poller.
"""

__version__ = "1.0.0"
