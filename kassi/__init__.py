"""SQLite storage, queries, a retrying job queue and worker, configuration and API envelopes for a crypto point-of-sale back office."""

__version__ = "0.1.0"