"""Payment webhook ingestion."""
