"""Partner lead ingestion, deduplication and marketplace settlement."""
