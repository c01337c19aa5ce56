"""
MySQL to ClickHouse Backfill

Moves reporting entities (invoices, payments, customers, memberships) from a
MySQL application database into per-provider ClickHouse tables.

Supports:
- Keyset pagination with checkpoints that only advance after clean pages
- Bulk dimension lookups instead of per-row queries
- Chunked writes with row-by-row fallback
- Dry runs, page limits and cancellation between pages
"""

__version__ = "0.1.0"
