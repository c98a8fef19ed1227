"""Recursive resolution and expansion of pseudo-loci.

A pseudo-locus such as ``L2B1_5`` stands for cluster 5 of step L2B1, whose
members may themselves be pseudo-loci of earlier steps. Two translations
back to real loci are provided:

- resolution follows a cluster's centroid at every level and yields one
  real locus;
- expansion follows every member at every level and yields all of the real
  loci the cluster was built from.

Because a step only references earlier steps, each substitution moves to an
earlier step and recursion ends after at most ``Itinerary.depth()`` levels.
The depth guard turns a corrupt hierarchy into a clean error.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .errors import ConfigurationError, DuplicateGenomeError, LookupInconsistencyError
from .itinerary import GenomeOrder
from .locus_ids import Locus, PseudoLocus, RealLocus, parse_locus, is_absent_marker
from .lookup import ClusterLookupCache

logger = logging.getLogger(__name__)


def _as_locus(locus: Union[str, Locus]) -> Locus:
    return parse_locus(locus) if isinstance(locus, str) else locus


def _check_depth(locus: PseudoLocus, depth: int, max_depth: Optional[int]) -> None:
    if max_depth is not None and depth > max_depth:
        raise LookupInconsistencyError(
            f"Recursion through {locus} exceeded the hierarchy depth of {max_depth}; "
            f"the step references contain a cycle"
        )


def resolve_locus(locus: Union[str, Locus], cache: ClusterLookupCache,
                  max_depth: Optional[int] = None, _depth: int = 0) -> str:
    """Resolve a locus to the single real locus representing it.

    Args:
        locus: Locus name or parsed locus
        cache: Lookup cache providing centroid tables
        max_depth: Maximum number of substitutions (usually Itinerary.depth())

    Returns:
        Name of a real locus; real loci are returned unchanged
    """
    locus = _as_locus(locus)
    if isinstance(locus, RealLocus):
        return locus.name

    _check_depth(locus, _depth + 1, max_depth)
    centroid = cache.centroid_of(locus.step, locus.cluster)
    return resolve_locus(centroid, cache, max_depth, _depth + 1)


def resolve_line(line: str, cache: ClusterLookupCache, max_depth: Optional[int] = None) -> str:
    """Resolve every tab-separated locus in a line."""
    return '\t'.join(resolve_locus(cell, cache, max_depth) if cell else cell
                     for cell in line.split('\t'))


def expand_locus(locus: Union[str, Locus], cache: ClusterLookupCache,
                 max_depth: Optional[int] = None, _depth: int = 0) -> List[str]:
    """Expand a locus into every real locus it ultimately represents.

    Args:
        locus: Locus name or parsed locus
        cache: Lookup cache providing cluster tables
        max_depth: Maximum nesting of substitutions (usually Itinerary.depth())

    Returns:
        Real locus names, in the stored member order of each cluster visited
    """
    locus = _as_locus(locus)
    if isinstance(locus, RealLocus):
        return [locus.name]

    _check_depth(locus, _depth + 1, max_depth)
    expanded = []
    for member in cache.members_of(locus.step, locus.cluster):
        expanded.extend(expand_locus(member, cache, max_depth, _depth + 1))
    return expanded


class LocusGenomeIndex:
    """Maps each real locus to the genome that owns it."""

    LOCUS_FIELD = 1
    GENOME_FIELD = 5

    def __init__(self, mapping: Optional[Dict[str, str]] = None):
        self._genome_of: Dict[str, str] = dict(mapping or {})

    @classmethod
    def from_att_files(cls, att_files: Iterable[Path]) -> 'LocusGenomeIndex':
        """Build the index from attribute files (field 2 locus, field 6 genome).

        Raises:
            FileNotFoundError: If an attribute file is missing
            ConfigurationError: If a record has fewer than 6 fields
        """
        index = cls()
        for att_file in att_files:
            index.add_att_file(Path(att_file))
        logger.info(f"Indexed {len(index)} loci")
        return index

    def add_att_file(self, att_file: Path) -> None:
        with open(att_file) as f:
            for line_num, line in enumerate(f, 1):
                line = line.rstrip('\r\n')
                if not line.strip():
                    continue
                fields = line.split('\t')
                if len(fields) <= self.GENOME_FIELD:
                    raise ConfigurationError(
                        f"{att_file}:{line_num}: expected at least {self.GENOME_FIELD + 1} "
                        f"tab-separated fields, found {len(fields)}"
                    )
                self._genome_of[fields[self.LOCUS_FIELD]] = fields[self.GENOME_FIELD]

    def __len__(self) -> int:
        return len(self._genome_of)

    def __contains__(self, locus: str) -> bool:
        return locus in self._genome_of

    def genome_of(self, locus: str) -> str:
        try:
            return self._genome_of[locus]
        except KeyError:
            raise LookupInconsistencyError(f"Locus {locus} not found in any attribute file")


def reorder_row(loci: Sequence[str], locus_index: LocusGenomeIndex, genome_order: GenomeOrder,
                empty: str = "", allow_duplicates: bool = False) -> List[str]:
    """Lay out real loci into one column per genome.

    Empty cells and absent markers in the input are skipped, so a row that
    is already laid out reorders to itself.

    Args:
        loci: Real locus names, in any order
        locus_index: Locus -> genome mapping
        genome_order: Fixed genome column order
        empty: Value for genomes with no locus in the row
        allow_duplicates: Let a later locus overwrite an earlier one from the
            same genome instead of raising

    Returns:
        List with exactly len(genome_order) entries

    Raises:
        LookupInconsistencyError: If a locus or its genome is unknown
        DuplicateGenomeError: If two loci share a genome and duplicates are
            not allowed
    """
    row = [empty] * len(genome_order)
    filled = [False] * len(genome_order)

    for locus in loci:
        if locus == empty or is_absent_marker(locus):
            continue
        genome = locus_index.genome_of(locus)
        if genome not in genome_order:
            raise LookupInconsistencyError(f"Genome {genome} of locus {locus} is not in the genome list")
        column = genome_order.index_of(genome)

        if filled[column]:
            message = f"Loci {row[column]} and {locus} both belong to genome {genome}"
            if not allow_duplicates:
                raise DuplicateGenomeError(message)
            logger.warning(f"{message}; keeping {locus}")

        row[column] = locus
        filled[column] = True

    return row
