"""Code shared by the slot indexer processes."""
