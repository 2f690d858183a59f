"""
Channel Sync
============

Pulls bookings from distribution platforms (iCal feeds, Lodgify) into a
property's local calendar, detects conflicts and records every run.
"""

__version__ = "1.0.0"
