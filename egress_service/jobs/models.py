"""Egress job descriptor."""

import time
from dataclasses import dataclass, field
from typing import Optional

from livekit.api import EgressInfo, EgressStatus

from egress_service.encoding import EncodingSettings
from egress_service.outputs.base import OutputSpec
from egress_service.pipeline import SourceSelector


TERMINAL_STATUSES = frozenset({
    EgressStatus.EGRESS_COMPLETE,
    EgressStatus.EGRESS_FAILED,
    EgressStatus.EGRESS_ABORTED,
    EgressStatus.EGRESS_LIMIT_REACHED,
})

ACTIVE_STATUSES = frozenset({
    EgressStatus.EGRESS_STARTING,
    EgressStatus.EGRESS_ACTIVE,
    EgressStatus.EGRESS_ENDING,
})


def is_terminal(status: int) -> bool:
    return status in TERMINAL_STATUSES


def status_name(status: int) -> str:
    """``EgressStatus`` value to its name, e.g. ``EGRESS_ACTIVE``."""
    return EgressStatus.Name(status)


def copy_info(info: EgressInfo) -> EgressInfo:
    """Deep copy of a descriptor."""
    snapshot = EgressInfo()
    snapshot.CopyFrom(info)
    return snapshot


@dataclass(frozen=True)
class EgressJob:
    """
    Everything needed to run one egress.

    ``info`` is the initial ``EGRESS_STARTING`` descriptor holding the
    verbatim request. The registry owns the live copy from then on; the
    rest of the job is the validated plan derived from the request.
    """
    info: EgressInfo
    source: SourceSelector
    output: OutputSpec
    encoding: Optional[EncodingSettings] = None
    created_at: int = field(default_factory=time.time_ns)

    @property
    def egress_id(self) -> str:
        return self.info.egress_id

    @property
    def room_name(self) -> str:
        return self.info.room_name
