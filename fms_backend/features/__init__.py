"""Feature modules: metadata extraction, indexing, launching."""
