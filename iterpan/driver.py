"""Expansion of the final step's result files back to original loci.

The final step of an iterative run clusters pseudo-genomes, so its
matchtable and centroids refer to pseudo-loci. This module writes
``<file>.expanded`` copies in which every pseudo-locus has been replaced by
real loci, plus ``cluster_sizes.txt`` and a concatenated, resolved
frameshift report. Original files are left untouched.
"""

import logging
import os
import re
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
from tqdm import tqdm

from .errors import LookupInconsistencyError, PartialOutputError
from .expansion import LocusGenomeIndex, expand_locus, reorder_row, resolve_line, resolve_locus
from .itinerary import GenomeOrder, Itinerary
from .locus_ids import PseudoLocus
from .lookup import ClusterLookupCache
from .workspace import Workspace

logger = logging.getLogger(__name__)

CENTROID_HEADER_PATTERN = re.compile(r'(>centroid_\d+\s+)(\S+)(.*)')


def count_lines(path: Path) -> int:
    """Count newline-terminated lines in a file."""
    count = 0
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            count += chunk.count(b'\n')
    return count


@contextmanager
def atomic_output(path: Path, expected_lines: Optional[int] = None):
    """Write a file through a temporary sibling that is renamed on success.

    The temporary file is flushed and fsynced before the rename. When
    expected_lines is given, the written line count is checked first.

    Raises:
        PartialOutputError: If the line count does not match
    """
    path = Path(path)
    temp_path = path.with_name(f".{path.name}.tmp")
    try:
        with open(temp_path, 'w') as f:
            yield f
            f.flush()
            os.fsync(f.fileno())

        if expected_lines is not None:
            written = count_lines(temp_path)
            if written != expected_lines:
                raise PartialOutputError(
                    f"{path}: wrote {written} lines, expected {expected_lines}"
                )

        temp_path.replace(path)
        logger.debug(f"Wrote {path}")
    finally:
        if temp_path.exists():
            temp_path.unlink()


def verified_copy(source: Path, destination_dir: Path) -> Path:
    """Copy a file into a directory and check the copy is complete."""
    destination = Path(destination_dir) / Path(source).name
    if Path(source).resolve() == destination.resolve():
        return destination
    shutil.copyfile(source, destination)
    source_size = Path(source).stat().st_size
    copied_size = destination.stat().st_size
    if copied_size != source_size:
        raise PartialOutputError(
            f"Copy of {source} to {destination} is truncated ({copied_size} of {source_size} bytes)"
        )
    return destination


@dataclass
class ExpansionReport:
    """Summary of an expansion run."""
    final_step: str = ""
    total_clusters: int = 0
    total_loci: int = 0
    size_histogram: Dict[int, int] = field(default_factory=dict)  # cluster size -> number of clusters
    core_clusters: int = 0  # clusters present in every genome
    outputs: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'final_step': self.final_step,
            'total_clusters': self.total_clusters,
            'total_loci': self.total_loci,
            'size_histogram': {str(k): v for k, v in self.size_histogram.items()},
            'core_clusters': self.core_clusters,
            'outputs': self.outputs,
        }


class ExpansionDriver:
    """Expands the final step's results of an itinerary."""

    def __init__(self, workspace: Workspace, itinerary: Itinerary, genome_order: GenomeOrder,
                 locus_index: LocusGenomeIndex, cache: Optional[ClusterLookupCache] = None,
                 allow_duplicates: bool = False, show_progress: bool = True):
        self.workspace = workspace
        self.itinerary = itinerary
        self.genome_order = genome_order
        self.locus_index = locus_index
        self.cache = cache if cache is not None else ClusterLookupCache(workspace, itinerary)
        self.allow_duplicates = allow_duplicates
        self.show_progress = show_progress
        self.max_depth = itinerary.depth()

    @property
    def final_step_name(self) -> str:
        return self.itinerary.final_step.name

    def expand_row(self, cluster_num: int) -> List[str]:
        """Expanded, genome-ordered row for one cluster of the final step."""
        loci = expand_locus(PseudoLocus(self.final_step_name, cluster_num), self.cache, self.max_depth)
        return reorder_row(loci, self.locus_index, self.genome_order,
                           allow_duplicates=self.allow_duplicates)

    def expand_matchtable(self, report: Optional[ExpansionReport] = None) -> Path:
        """Write matchtable.txt.expanded and cluster_sizes.txt.

        Returns:
            Path of the expanded matchtable in the working directory
        """
        step_name = self.final_step_name
        report = report if report is not None else ExpansionReport(final_step=step_name)
        table = self.cache.clusters_of(step_name)
        num_clusters = len(table)

        if set(table) != set(range(1, num_clusters + 1)):
            raise LookupInconsistencyError(
                f"{self.workspace.matchtable(step_name)} cluster numbers are not 1..{num_clusters}"
            )

        expanded_path = Path(f"{self.workspace.matchtable(step_name)}.expanded")
        logger.info(f"Expanding {num_clusters} clusters of {step_name} into {expanded_path}")

        sizes = np.zeros(num_clusters, dtype=int)
        with atomic_output(expanded_path, expected_lines=num_clusters) as matchtable_out, \
                atomic_output(self.workspace.cluster_sizes, expected_lines=num_clusters) as sizes_out:
            for cluster_num in tqdm(range(1, num_clusters + 1), desc="Expanding clusters",
                                    unit="cluster", disable=not self.show_progress):
                row = self.expand_row(cluster_num)
                size = sum(1 for cell in row if cell)
                sizes[cluster_num - 1] = size
                sizes_out.write(f"{cluster_num}\t{size}\n")
                matchtable_out.write(f"{cluster_num}\t" + '\t'.join(row) + "\n")

        copied = verified_copy(expanded_path, self.workspace.working_dir)

        report.total_clusters = num_clusters
        report.total_loci = int(sizes.sum())
        if num_clusters:
            values, counts = np.unique(sizes, return_counts=True)
            report.size_histogram = {int(v): int(c) for v, c in zip(values, counts)}
        report.core_clusters = int(np.count_nonzero(sizes == len(self.genome_order)))
        report.outputs['matchtable'] = str(copied)
        report.outputs['cluster_sizes'] = str(self.workspace.cluster_sizes)
        logger.info(f"Expanded {num_clusters} clusters containing {report.total_loci} loci "
                    f"({report.core_clusters} core)")
        return copied

    def expand_centroids(self, report: Optional[ExpansionReport] = None) -> Path:
        """Write centroids.fasta.expanded with centroid names resolved to real loci."""
        source = self.workspace.centroids(self.final_step_name)
        expanded_path = Path(f"{source}.expanded")
        logger.info(f"Resolving centroid names in {source}")

        with open(source) as f_in:
            lines = [line.rstrip('\r\n') for line in f_in]

        resolved = 0
        with atomic_output(expanded_path, expected_lines=len(lines)) as f_out:
            for line in lines:
                match = CENTROID_HEADER_PATTERN.match(line)
                if match:
                    locus = resolve_locus(match.group(2), self.cache, self.max_depth)
                    if locus != match.group(2):
                        resolved += 1
                    line = f"{match.group(1)}{locus}{match.group(3)}"
                f_out.write(line + "\n")

        copied = verified_copy(expanded_path, self.workspace.working_dir)
        logger.debug(f"Resolved {resolved} pseudo-locus centroid names")
        if report is not None:
            report.outputs['centroids'] = str(copied)
        return copied

    def resolve_frameshifts(self, output_path: Path, report: Optional[ExpansionReport] = None) -> Path:
        """Concatenate every step's frameshifts.txt with loci resolved.

        Header lines starting with '>' are copied as they are.
        """
        output_path = Path(output_path)
        logger.info(f"Writing resolved frameshifts to {output_path}")

        num_lines = 0
        with atomic_output(output_path) as f_out:
            for step in self.itinerary:
                frameshift_file = self.workspace.frameshifts(step.name)
                with open(frameshift_file) as f_in:
                    for line in f_in:
                        line = line.rstrip('\r\n')
                        if not line.startswith('>'):
                            line = resolve_line(line, self.cache, self.max_depth)
                        f_out.write(line + "\n")
                        num_lines += 1

        if report is not None:
            report.outputs['frameshifts'] = str(output_path)
        logger.debug(f"Wrote {num_lines} frameshift lines")
        return output_path

    def run(self, frameshift_output: Optional[Path] = None) -> ExpansionReport:
        """Expand centroids and matchtable, then resolve frameshifts.

        Args:
            frameshift_output: Output path for resolved frameshifts; skipped
                when None
        """
        report = ExpansionReport(final_step=self.final_step_name)
        self.expand_centroids(report)
        self.expand_matchtable(report)

        if self.workspace.fragment_fusions(self.final_step_name).exists():
            logger.info("fragment_fusions.txt expansion is not implemented; file left unexpanded")

        if frameshift_output is not None:
            self.resolve_frameshifts(frameshift_output, report)

        logger.debug(f"Lookup cache: {self.cache.stats()}")
        return report
