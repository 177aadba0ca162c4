"""Durable message log.

Services:
    - Database: shared DuckDB connection with error translation.
    - MessageStore: append-only messages plus delivery/read receipts.
"""
