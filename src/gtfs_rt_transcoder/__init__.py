"""GTFS-RT Transcoder: fetches a GTFS-Realtime feed and re-emits it as JSON."""

__version__ = "0.1.0"

from gtfs_rt_transcoder.__main__ import main

__all__ = ["main", "__version__"]
