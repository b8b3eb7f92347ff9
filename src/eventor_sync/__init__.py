"""eventor_sync: Eventor competition data synchronization into PostgreSQL."""

__version__ = "0.1.0"
