"""
Database models for the document chat backend.

Importing this package registers every model on the shared metadata.
"""

from docchat.models.base import TimestampMixin
from docchat.models.company import Company
from docchat.models.setting import Setting, SettingKey

__all__ = [
    "TimestampMixin",
    "Company",
    "Setting",
    "SettingKey",
]
