"""Egress job descriptors, registry and lifecycle state machine."""

from .models import EgressJob, TERMINAL_STATUSES, ACTIVE_STATUSES, is_terminal, status_name
from .registry import EgressRegistry, EgressStore, JobWriter
from .state_machine import EgressStateMachine, StateTransition, VALID_TRANSITIONS, can_transition

__all__ = [
    "ACTIVE_STATUSES",
    "EgressJob",
    "EgressRegistry",
    "EgressStateMachine",
    "EgressStore",
    "JobWriter",
    "StateTransition",
    "TERMINAL_STATUSES",
    "VALID_TRANSITIONS",
    "can_transition",
    "is_terminal",
    "status_name",
]
