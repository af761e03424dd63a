"""
Ingestion sources: folder watchers, API pollers and their coordinators.
"""
