"""
Configuration for the CouchDB river.
"""

from .settings import (
    Settings,
    CouchDBSettings,
    IndexSettings,
    OpenSearchSettings,
    RiverSettings,
    get_settings,
    reload_settings,
)

__all__ = [
    "Settings",
    "CouchDBSettings",
    "IndexSettings",
    "OpenSearchSettings",
    "RiverSettings",
    "get_settings",
    "reload_settings",
]
