"""Database package for egress persistence."""

from .models import Base, EgressRecord
from .repository import SQLEgressStore

__all__ = [
    "Base",
    "EgressRecord",
    "SQLEgressStore",
]
