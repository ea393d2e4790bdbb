"""Domain model, settings, credentials and the ingestion pipeline."""
