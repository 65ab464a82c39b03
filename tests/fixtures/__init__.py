"""Test fixtures for assessment runs."""

from .assessment_fixtures import (
    CLIENT_ID,
    ENV_ID,
    ORG_ID,
    OTHER_ORG_ID,
    SUB_A,
    SUB_B,
    SUB_C,
    graph_row,
    make_resource,
)

__all__ = [
    "CLIENT_ID",
    "ENV_ID",
    "ORG_ID",
    "OTHER_ORG_ID",
    "SUB_A",
    "SUB_B",
    "SUB_C",
    "graph_row",
    "make_resource",
]
