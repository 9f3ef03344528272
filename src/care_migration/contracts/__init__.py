"""Typed records and abstract interfaces shared by the migration and backup services."""
