"""
QR Pop Store - Persistence layer for QR codes and templates.

Wraps an embedded SQLite store with optional cloud-sync options and
on-device search indexing kept consistent through change notifications.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
