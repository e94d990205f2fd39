"""Pipeline stages: list/download, freshness, extract, load, status."""
