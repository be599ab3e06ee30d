"""Storage backends for sync settings and image metadata."""

from imagesync.storage.base import LAST_SYNC_KEY, ImageRecord, MetadataStore, SettingsStore
from imagesync.storage.dict_store import DictMetadataStore, DictSettingsStore
from imagesync.storage.rest_store import RestMetadataStore
from imagesync.storage.sqlite_store import SQLiteMetadataStore, SQLiteSettingsStore

__all__ = [
    "LAST_SYNC_KEY",
    "ImageRecord",
    "MetadataStore",
    "SettingsStore",
    "DictMetadataStore",
    "DictSettingsStore",
    "RestMetadataStore",
    "SQLiteMetadataStore",
    "SQLiteSettingsStore",
]
