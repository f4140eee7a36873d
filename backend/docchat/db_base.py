"""
Declarative base shared by every ORM model.

Import models through docchat.models so they register on this metadata
before create_all() runs.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
