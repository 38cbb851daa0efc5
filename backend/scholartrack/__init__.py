"""ScholarTrack local-first data synchronization and migration backend."""

__version__ = "1.0.0"
