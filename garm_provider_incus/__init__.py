"""
External provider for GARM backed by an Incus (or LXD) endpoint.
"""

__version__ = "0.1.0"
