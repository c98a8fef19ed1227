"""Directory layout of an iterative pangenome working directory."""

from dataclasses import dataclass
from pathlib import Path


@dataclass
class Workspace:
    """Paths used by the pipeline, rooted at the working directory.

    Layout:
        <working_dir>/fasta_dir/<genome>.pep|.nuc   per-genome sequences
        <working_dir>/att_dir/<genome><att_suffix>  per-genome attributes
        <working_dir>/<step>/                       one directory per step
        <working_dir>/<step>/results/               PanOCT output for the step
    """
    working_dir: Path
    att_suffix: str = ".att"
    use_nuc: bool = False

    def __post_init__(self):
        self.working_dir = Path(self.working_dir)

    @property
    def fasta_dir(self) -> Path:
        return self.working_dir / "fasta_dir"

    @property
    def att_dir(self) -> Path:
        return self.working_dir / "att_dir"

    @property
    def fasta_extension(self) -> str:
        return "nuc" if self.use_nuc else "pep"

    def fasta_file(self, part: str) -> Path:
        """Sequence file for a genome or a step's pseudo-genome."""
        return self.fasta_dir / f"{part}.{self.fasta_extension}"

    def att_file(self, part: str) -> Path:
        """Attribute file for a genome or a step's pseudo-genome."""
        return self.att_dir / f"{part}{self.att_suffix}"

    def step_dir(self, step_name: str) -> Path:
        return self.working_dir / step_name

    def results_dir(self, step_name: str) -> Path:
        return self.step_dir(step_name) / "results"

    def matchtable(self, step_name: str) -> Path:
        return self.results_dir(step_name) / "matchtable.txt"

    def centroids(self, step_name: str) -> Path:
        return self.results_dir(step_name) / "centroids.fasta"

    def frameshifts(self, step_name: str) -> Path:
        return self.results_dir(step_name) / "frameshifts.txt"

    def fragment_fusions(self, step_name: str) -> Path:
        return self.results_dir(step_name) / "fragment_fusions.txt"

    @property
    def cluster_sizes(self) -> Path:
        return self.working_dir / "cluster_sizes.txt"

    @property
    def stats_dir(self) -> Path:
        return self.working_dir / "stats"

    @property
    def final_run_dir(self) -> Path:
        return self.working_dir / "final_panoct_run"

    @property
    def log_file(self) -> Path:
        return self.working_dir / "run_pangenome.log"
