"""
Database models for Cloud Voucher Sync.

This module contains the PostgreSQL schema definition. ``{schema}`` in
the file is replaced with the configured schema name when it is executed.
"""
from pathlib import Path

# Path to schema file
SCHEMA_FILE = Path(__file__).parent / "schema.sql"
