"""
Services module for the egress engine.

This module contains the request-facing egress service and the request
validation it relies on.
"""

from .egress import EgressService, new_egress_id

__all__ = [
    'EgressService',
    'new_egress_id',
]
