"""Partitioned, resumable ingestion of a paginated event feed."""
