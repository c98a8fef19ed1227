"""Per-step cluster and centroid lookup tables.

Each step's ``results/matchtable.txt`` and ``results/centroids.fasta`` are
parsed lazily the first time a pseudo-locus refers to that step, and kept for
the rest of the run. The files themselves are never modified.
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from Bio import SeqIO

from .errors import LookupInconsistencyError
from .itinerary import Itinerary
from .locus_ids import Locus, parse_locus, is_absent_marker
from .workspace import Workspace

logger = logging.getLogger(__name__)

CENTROID_ID_PATTERN = re.compile(r'centroid_(\d+)')

ClusterTable = Dict[int, List[Locus]]
CentroidTable = Dict[int, Locus]


def parse_matchtable(matchtable_path: Path) -> ClusterTable:
    """Parse a PanOCT match table into cluster number -> member loci.

    The first field of each row is the cluster number; the remaining fields
    hold one locus per genome column, or an absent marker. Absent markers
    are dropped, so members keep their relative order but not their column.

    Raises:
        FileNotFoundError: If the file does not exist
        LookupInconsistencyError: If a row does not start with a cluster number,
            or a cluster number is repeated
    """
    table: ClusterTable = {}
    with open(matchtable_path) as f:
        for line_num, line in enumerate(f, 1):
            line = line.rstrip('\r\n')
            if not line.strip():
                continue
            fields = line.split('\t')
            try:
                cluster_num = int(fields[0])
            except ValueError:
                raise LookupInconsistencyError(
                    f"{matchtable_path}:{line_num}: expected a cluster number, got '{fields[0]}'"
                )
            if cluster_num in table:
                raise LookupInconsistencyError(
                    f"{matchtable_path}:{line_num}: cluster {cluster_num} appears more than once"
                )
            table[cluster_num] = [parse_locus(cell.strip()) for cell in fields[1:]
                                  if not is_absent_marker(cell)]
    return table


def parse_centroids(centroids_path: Path) -> CentroidTable:
    """Parse centroid representatives from a centroids FASTA file.

    Headers look like ``>centroid_12 LOCUS_NAME other text``; the second
    whitespace-separated token is the representative locus.

    Raises:
        LookupInconsistencyError: If a centroid number is repeated
    """
    table: CentroidTable = {}
    for record in SeqIO.parse(str(centroids_path), "fasta"):
        match = CENTROID_ID_PATTERN.fullmatch(record.id)
        tokens = record.description.split()
        if not match or len(tokens) < 2:
            logger.debug(f"Skipping non-centroid record '{record.description}' in {centroids_path}")
            continue
        cluster_num = int(match.group(1))
        if cluster_num in table:
            raise LookupInconsistencyError(
                f"{centroids_path}: centroid_{cluster_num} appears more than once"
            )
        table[cluster_num] = parse_locus(tokens[1])
    return table


class ClusterLookupCache:
    """Memoized access to every step's cluster and centroid tables."""

    def __init__(self, workspace: Workspace, itinerary: Optional[Itinerary] = None):
        """Initialize cache.

        Args:
            workspace: Working directory layout used to locate result files
            itinerary: If given, lookups for steps outside it are rejected
        """
        self.workspace = workspace
        self.itinerary = itinerary
        self._clusters: Dict[str, ClusterTable] = {}
        self._centroids: Dict[str, CentroidTable] = {}

    def _check_step(self, step_name: str) -> None:
        if self.itinerary is not None and step_name not in self.itinerary:
            raise LookupInconsistencyError(f"Pseudo-locus refers to unknown step {step_name}")

    def clusters_of(self, step_name: str) -> ClusterTable:
        """Cluster table of a step, reading its match table on first use."""
        if step_name not in self._clusters:
            self._check_step(step_name)
            path = self.workspace.matchtable(step_name)
            logger.debug(f"Loading cluster table for {step_name} from {path}")
            self._clusters[step_name] = parse_matchtable(path)
        return self._clusters[step_name]

    def centroids_of(self, step_name: str) -> CentroidTable:
        """Centroid table of a step, reading its centroids file on first use."""
        if step_name not in self._centroids:
            self._check_step(step_name)
            path = self.workspace.centroids(step_name)
            if not path.exists():
                raise FileNotFoundError(f"Centroids file not found: {path}")
            logger.debug(f"Loading centroid table for {step_name} from {path}")
            self._centroids[step_name] = parse_centroids(path)
        return self._centroids[step_name]

    def members_of(self, step_name: str, cluster_num: int) -> List[Locus]:
        """Ordered member loci of one cluster of a step."""
        table = self.clusters_of(step_name)
        if cluster_num not in table:
            raise LookupInconsistencyError(
                f"Couldn't find cluster {cluster_num} in {self.workspace.matchtable(step_name)}"
            )
        return table[cluster_num]

    def centroid_of(self, step_name: str, cluster_num: int) -> Locus:
        """Representative locus of one cluster of a step."""
        table = self.centroids_of(step_name)
        if cluster_num not in table:
            raise LookupInconsistencyError(
                f"Couldn't get locus for centroid_{cluster_num} from {self.workspace.centroids(step_name)}"
            )
        return table[cluster_num]

    def stats(self) -> Dict[str, int]:
        """Number of steps whose tables have been loaded."""
        return {
            'cluster_tables': len(self._clusters),
            'centroid_tables': len(self._centroids),
        }
