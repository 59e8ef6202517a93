"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import Numeric, Uuid

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid

# Stock quantities and weights: fractional for weighable goods
QUANTITY_PRECISION = 12
QUANTITY_SCALE = 3


def QuantityType() -> Numeric:
    """Numeric column type used for every quantity and weight."""
    return Numeric(QUANTITY_PRECISION, QUANTITY_SCALE)
