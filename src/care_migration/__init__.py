"""
Care records migration and backup toolkit.

Moves data from the legacy monolithic store into per-service target stores
and protects every such operation with verifiable, restorable backups.
"""

__version__ = "1.0.0"
