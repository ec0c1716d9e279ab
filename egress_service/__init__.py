"""Egress orchestration engine: records and restreams live rooms and tracks."""

__version__ = "0.1.0"
