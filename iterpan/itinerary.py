"""Itinerary parsing and genome ordering.

The hierarchy definition ("clusters list") has one step per line:

    L1B1(GenomeA,GenomeB,GenomeC)
    L1B2(GenomeD,GenomeE)
    L2B1(L1B1,L1B2)

File order is execution order. A step may reference only steps defined on
an earlier line, which keeps the reference graph acyclic.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import ConfigurationError
from .locus_ids import is_step_name
from .workspace import Workspace

logger = logging.getLogger(__name__)

STEP_LINE_PATTERN = re.compile(r'(L\d+B\d+)\((.*)\)\s*')


@dataclass(frozen=True)
class Step:
    """One execution unit of the hierarchy."""
    name: str
    parts: Tuple[str, ...]

    def step_references(self) -> List[str]:
        return [part for part in self.parts if is_step_name(part)]

    def genome_parts(self) -> List[str]:
        return [part for part in self.parts if not is_step_name(part)]


@dataclass
class Itinerary:
    """Ordered steps; the last one is the final level."""
    steps: List[Step] = field(default_factory=list)
    file_errors: List[str] = field(default_factory=list)

    def __post_init__(self):
        self._by_name: Dict[str, Step] = {step.name: step for step in self.steps}

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __contains__(self, step_name: str) -> bool:
        return step_name in self._by_name

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    @property
    def final_step(self) -> Step:
        if not self.steps:
            raise ConfigurationError("Itinerary contains no steps")
        return self.steps[-1]

    def raw_genomes(self) -> List[str]:
        """Raw genome ids referenced anywhere, in order of first appearance."""
        seen = {}
        for step in self.steps:
            for part in step.genome_parts():
                seen.setdefault(part, None)
        return list(seen)

    def depth(self) -> int:
        """Length of the longest chain of step references.

        A step made only of raw genomes has depth 1, so a pseudo-locus of the
        final step needs at most depth() substitutions to reach a real locus.
        """
        depths: Dict[str, int] = {}
        for step in self.steps:
            depths[step.name] = 1 + max((depths[ref] for ref in step.step_references()), default=0)
        return max(depths.values(), default=0)


def strip_part(part: str) -> str:
    """Strip whitespace, directory and the last file extension from a part.

    Examples:
        >>> strip_part(" fasta_dir/GenomeA.pep")
        'GenomeA'
        >>> strip_part("L1B1")
        'L1B1'
    """
    name = Path(part.strip()).name
    if '.' in name[1:]:
        name = name[:name.rindex('.')]
    return name


def parse_step_line(line: str) -> Step:
    """Parse one ``StepName(part,part,...)`` line.

    Raises:
        ConfigurationError: If the line does not follow the grammar
    """
    match = STEP_LINE_PATTERN.fullmatch(line.strip())
    if not match:
        raise ConfigurationError(f"Don't know what to do with this line: {line.rstrip()}")

    step_name, parts_text = match.group(1), match.group(2)
    parts = tuple(strip_part(part) for part in parts_text.split(','))
    if any(not part for part in parts):
        raise ConfigurationError(f"Empty part in step {step_name}: {line.rstrip()}")

    return Step(name=step_name, parts=parts)


def check_part_files(step: Step, workspace: Workspace) -> List[str]:
    """Check that every raw-genome part has its fasta and att files.

    Step references are skipped, their pseudo-genome files are only created
    once the referenced step has run.

    Returns:
        List of descriptive error messages (empty when all files exist)
    """
    missing_fasta = []
    missing_att = []

    for part in step.genome_parts():
        if not workspace.fasta_file(part).is_file():
            missing_fasta.append(part)
        if not workspace.att_file(part).is_file():
            missing_att.append(part)

    errors = []
    if missing_fasta:
        errors.append(f"Missing the following fasta from step {step.name}: {','.join(missing_fasta)}")
    if missing_att:
        errors.append(f"Missing the following atts from step {step.name}: {','.join(missing_att)}")
    return errors


def build_itinerary(cluster_file, workspace: Optional[Workspace] = None) -> Itinerary:
    """Read the hierarchy definition into an Itinerary.

    Args:
        cluster_file: Path to the hierarchy definition file
        workspace: If given, check that input files exist for raw genomes.
            Missing files are logged and recorded but do not stop parsing.

    Returns:
        Itinerary in file order

    Raises:
        ConfigurationError: On malformed lines, duplicate step names or
            references to steps that are not defined on an earlier line
    """
    cluster_file = Path(cluster_file)
    logger.debug(f"Building itinerary from cluster file: {cluster_file}")

    if not cluster_file.is_file():
        raise ConfigurationError(f"Can't find cluster_file: {cluster_file}")

    steps: List[Step] = []
    defined = set()
    file_errors: List[str] = []

    with open(cluster_file) as f:
        for line_num, line in enumerate(f, 1):
            if not line.strip():
                continue

            step = parse_step_line(line)

            if step.name in defined:
                raise ConfigurationError(f"Step {step.name} defined twice (line {line_num})")
            for ref in step.step_references():
                if ref == step.name:
                    raise ConfigurationError(f"Step {step.name} references itself (line {line_num})")
                if ref not in defined:
                    raise ConfigurationError(
                        f"Step {step.name} references {ref}, which is not defined on an earlier line "
                        f"(line {line_num})"
                    )

            if workspace is not None:
                for error in check_part_files(step, workspace):
                    logger.warning(error)
                    file_errors.append(error)

            steps.append(step)
            defined.add(step.name)

    if not steps:
        raise ConfigurationError(f"No steps found in cluster_file: {cluster_file}")

    itinerary = Itinerary(steps=steps, file_errors=file_errors)
    logger.info(f"Itinerary has {len(itinerary)} steps, final step {itinerary.final_step.name}, "
                f"depth {itinerary.depth()}")
    return itinerary


class GenomeOrder:
    """Canonical genome ordering that fixes output column positions."""

    def __init__(self, genomes: List[str]):
        self.genomes: List[str] = []
        self._index: Dict[str, int] = {}
        for genome in genomes:
            if genome in self._index:
                logger.warning(f"Genome {genome} listed more than once, keeping first position")
                continue
            self._index[genome] = len(self.genomes)
            self.genomes.append(genome)

    @classmethod
    def from_file(cls, genome_list_file) -> 'GenomeOrder':
        """Read one genome id per line; line order is column order."""
        path = Path(genome_list_file)
        logger.debug(f"Getting genome order from {path}")
        if not path.is_file():
            raise ConfigurationError(f"Can't find genome_list_file: {path}")

        with open(path) as f:
            genomes = [line.strip() for line in f if line.strip()]
        return cls(genomes)

    def __len__(self) -> int:
        return len(self.genomes)

    def __iter__(self):
        return iter(self.genomes)

    def __contains__(self, genome: str) -> bool:
        return genome in self._index

    def index_of(self, genome: str) -> int:
        """Column index of a genome. Raises KeyError for unknown genomes."""
        return self._index[genome]
