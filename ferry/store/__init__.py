from ferry.store.settings import SettingsStore
from ferry.store.sqlite_store import SQLiteStore

__all__ = ["SQLiteStore", "SettingsStore"]
