"""Utility functions for step names and pseudo-locus identifiers.

Loci emitted by a step's pseudo-genome are named ``<StepName>_<ClusterNumber>``
(e.g. ``L1B1_42``). Everything else is a real locus taken from the original
annotation data.
"""

import re
from dataclasses import dataclass
from typing import Union

STEP_NAME_PATTERN = re.compile(r'L\d+B\d+')
PSEUDO_LOCUS_PATTERN = re.compile(r'(L\d+B\d+)_(\d+)')
ABSENT_MARKER_PATTERN = re.compile(r'-{3,}')


@dataclass(frozen=True)
class RealLocus:
    """A locus belonging to exactly one raw genome."""
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class PseudoLocus:
    """A locus standing in for a whole cluster of an earlier step."""
    step: str
    cluster: int

    def __str__(self) -> str:
        return format_pseudo_locus(self.step, self.cluster)


Locus = Union[RealLocus, PseudoLocus]


def is_step_name(name: str) -> bool:
    """Check whether a name is a step name.

    Examples:
        >>> is_step_name("L2B13")
        True
        >>> is_step_name("GenomeA")
        False
    """
    return STEP_NAME_PATTERN.fullmatch(name) is not None


def format_pseudo_locus(step_name: str, cluster_num: int) -> str:
    """Format a pseudo-locus name.

    Examples:
        >>> format_pseudo_locus("L1B1", 7)
        'L1B1_7'
    """
    return f"{step_name}_{cluster_num}"


def parse_locus(value: str) -> Locus:
    """Parse a locus name into a RealLocus or PseudoLocus.

    Only the start of the name has to match the pseudo-locus pattern, so
    ``L1B1_7`` and ``L1B1_7.extra`` both refer to cluster 7 of step L1B1.

    Examples:
        >>> parse_locus("L1B1_7")
        PseudoLocus(step='L1B1', cluster=7)
        >>> parse_locus("ECOLI_01234")
        RealLocus(name='ECOLI_01234')
    """
    match = PSEUDO_LOCUS_PATTERN.match(value)
    if match:
        return PseudoLocus(match.group(1), int(match.group(2)))
    return RealLocus(value)


def is_absent_marker(cell: str) -> bool:
    """Check whether a table cell marks an absent genome (empty or 3+ hyphens)."""
    cell = cell.strip()
    return not cell or ABSENT_MARKER_PATTERN.search(cell) is not None
