"""
SQLAlchemy declarative base shared by the billing ledger models.
"""
from sqlalchemy.orm import declarative_base

Base = declarative_base()
