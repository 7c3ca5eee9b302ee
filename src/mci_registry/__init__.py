# src/mci_registry/__init__.py
"""
MCI Registry: a catalog of typed, versioned definitions whose payloads live
in content-addressed object storage.
"""

__version__ = "1.0.0"
