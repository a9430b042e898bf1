"""
Distribution List Sync - Reconcile a directory distribution group against a personnel roster.

This package reduces a periodic personnel export to a configured column set, resolves
each roster email to a directory identity, and keeps the membership and mail-routing
attributes of one distribution group in line with it. Run history is retained so a
past roster can be replayed.
"""

__version__ = "1.0.0"
__author__ = "DL Sync Team"
