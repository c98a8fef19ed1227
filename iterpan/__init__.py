"""
iterpan: Iterative Pangenome Pipeline

Runs PanOCT over a hierarchy of genome groups, feeding each group's clusters
to higher levels as pseudo-genomes, and expands the final results back to
the original per-genome loci.
"""

__version__ = "0.1.0"

from .errors import (
    IterpanError,
    ConfigurationError,
    LookupInconsistencyError,
    DuplicateGenomeError,
    PartialOutputError,
    ExternalToolError
)
from .locus_ids import RealLocus, PseudoLocus, parse_locus, format_pseudo_locus
from .itinerary import Step, Itinerary, GenomeOrder, build_itinerary, parse_step_line
from .lookup import ClusterLookupCache
from .expansion import LocusGenomeIndex, resolve_locus, expand_locus, reorder_row
from .driver import ExpansionDriver, ExpansionReport
from .pipeline import PipelineConfig, IterativePipeline, StepExecutor

__all__ = [
    "IterpanError",
    "ConfigurationError",
    "LookupInconsistencyError",
    "DuplicateGenomeError",
    "PartialOutputError",
    "ExternalToolError",
    "RealLocus",
    "PseudoLocus",
    "parse_locus",
    "format_pseudo_locus",
    "Step",
    "Itinerary",
    "GenomeOrder",
    "build_itinerary",
    "parse_step_line",
    "ClusterLookupCache",
    "LocusGenomeIndex",
    "resolve_locus",
    "expand_locus",
    "reorder_row",
    "ExpansionDriver",
    "ExpansionReport",
    "PipelineConfig",
    "IterativePipeline",
    "StepExecutor"
]
