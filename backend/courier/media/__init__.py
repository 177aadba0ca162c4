"""Image storage for image messages (local disk + DuckDB metadata)."""
