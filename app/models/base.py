"""Shared metadata for all tables."""

from sqlalchemy import MetaData

metadata = MetaData()
