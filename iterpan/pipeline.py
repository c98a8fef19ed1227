"""Step execution and orchestration of an iterative pangenome run.

For each step of the itinerary the executor concatenates the parts' input
files, runs PanOCT through ``run_panoct.pl`` and turns the step's clusters
into a pseudo-genome with ``gene_order.pl``. After the last step the
pseudo-loci in the final results are expanded, statistics are generated and
a final PanOCT run is made on the expanded match table.
"""

import logging
import os
import shutil
import subprocess
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import __version__
from .driver import ExpansionDriver, ExpansionReport
from .errors import ConfigurationError, ExternalToolError
from .expansion import LocusGenomeIndex
from .itinerary import GenomeOrder, Itinerary, Step, build_itinerary
from .state import PipelineState, load_or_create_state
from .workspace import Workspace

logger = logging.getLogger(__name__)

PANOCT_EXEC = "panoct.pl"
GENE_ORDER_EXEC = "gene_order.pl"
CONVERT_ATT_EXEC = "convert_att_file_to_hsh.pl"
STATISTICS_EXEC = "pangenome_statistics.pl"
RUNPANOCT_EXEC = "run_panoct.pl"


@dataclass
class PipelineConfig:
    """Options for an iterative pangenome run."""
    working_dir: Path = field(default_factory=Path.cwd)
    genome_list_file: Optional[Path] = None
    cluster_file: Optional[Path] = None
    att_suffix: str = ".att"
    use_nuc: bool = False
    no_blast: bool = False
    blast_local: bool = False
    panoct_local: bool = False
    project_code: Optional[str] = None
    less_strict_panoct: bool = False
    rerun_groups: List[str] = field(default_factory=list)
    expand_only: bool = False
    resume: bool = False
    force_input_change: bool = False
    allow_duplicate_genomes: bool = False
    bin_dir: Optional[Path] = None
    show_progress: bool = True

    def __post_init__(self):
        # External commands run inside step directories, so every path is absolute
        self.working_dir = Path(self.working_dir).resolve()
        if self.genome_list_file is None:
            self.genome_list_file = self.working_dir / "genomes.list"
        self.genome_list_file = Path(self.genome_list_file).resolve()
        if self.cluster_file is None and (self.working_dir / "clusters.list").is_file():
            self.cluster_file = self.working_dir / "clusters.list"
        if self.cluster_file is not None:
            self.cluster_file = Path(self.cluster_file).resolve()
        if self.bin_dir is None and os.environ.get("ITERPAN_BIN_DIR"):
            self.bin_dir = Path(os.environ["ITERPAN_BIN_DIR"])
        if self.bin_dir is not None:
            self.bin_dir = Path(self.bin_dir).resolve()
        if self.expand_only:
            self.no_blast = True

    def validate(self) -> None:
        """Check paths up front, reporting every problem at once.

        Raises:
            ConfigurationError: If any required path is missing
        """
        errors = []
        if not self.working_dir.is_dir():
            errors.append(f"Can't find working directory {self.working_dir}")
        if not self.genome_list_file.is_file():
            errors.append(f"Can't find genome_list_file: {self.genome_list_file}")
        if self.cluster_file is not None and not self.cluster_file.is_file():
            errors.append(f"Can't find cluster_file: {self.cluster_file}")
        if self.bin_dir is not None and not Path(self.bin_dir).is_dir():
            errors.append(f"Can't find bin directory {self.bin_dir}")
        if errors:
            raise ConfigurationError("\n".join(errors))

    def workspace(self) -> Workspace:
        return Workspace(self.working_dir, att_suffix=self.att_suffix, use_nuc=self.use_nuc)

    def executable(self, name: str) -> str:
        """Path of a helper program, from bin_dir or PATH."""
        if self.bin_dir is not None:
            return str(Path(self.bin_dir) / name)
        return shutil.which(name) or name

    def to_parameters(self) -> Dict:
        """Parameters recorded in the run state."""
        params = asdict(self)
        return {key: str(value) if isinstance(value, Path) else value for key, value in params.items()}


def run_command(cmd: List[str], cwd: Optional[Path] = None, stdout_path: Optional[Path] = None) -> None:
    """Run an external program and wait for it.

    Args:
        cmd: Command and arguments
        cwd: Working directory for the command
        stdout_path: If given, stdout and stderr are written to this file

    Raises:
        ExternalToolError: If the program is missing or exits non-zero
    """
    logger.info(f"Running: {' '.join(str(part) for part in cmd)}")
    try:
        if stdout_path is not None:
            with open(stdout_path, 'w') as out:
                subprocess.run(cmd, cwd=cwd, check=True, stdout=out, stderr=subprocess.STDOUT)
        else:
            result = subprocess.run(cmd, cwd=cwd, check=True, capture_output=True, text=True)
            if result.stdout:
                logger.debug(result.stdout.rstrip())
    except subprocess.CalledProcessError as e:
        logger.error(f"{cmd[0]} failed with exit status {e.returncode}")
        if e.stderr:
            logger.error(f"{cmd[0]} stderr: {e.stderr}")
        raise ExternalToolError(f"Problem running {cmd[0]} (exit status {e.returncode})") from e
    except FileNotFoundError as e:
        raise ExternalToolError(f"{cmd[0]} command not found. Please check --bin-dir or PATH.") from e


def concatenate_files(sources: Iterable[Path], destination: Path) -> Path:
    """Concatenate files into destination, in the given order."""
    with open(destination, 'wb') as out:
        for source in sources:
            with open(source, 'rb') as f:
                shutil.copyfileobj(f, out)
    return destination


def _replace_symlink(target, link: Path) -> None:
    if link.is_symlink() or link.exists():
        link.unlink()
    os.symlink(target, link)


class StepExecutor:
    """Runs PanOCT and the pseudo-genome synthesizer for single steps."""

    def __init__(self, config: PipelineConfig):
        self.config = config
        self.workspace = config.workspace()

    def make_combined_fasta(self, step_fasta_dir: Path, parts: Iterable[str]) -> Path:
        combined_fasta = step_fasta_dir / "combined.fasta"
        logger.debug(f"Creating {combined_fasta}")
        return concatenate_files([self.workspace.fasta_file(part) for part in parts], combined_fasta)

    def make_combined_att(self, step_dir: Path, parts: Iterable[str]) -> Path:
        combined_att = step_dir / f"combined{self.workspace.att_suffix}"
        logger.debug(f"Creating {combined_att}")
        return concatenate_files([self.workspace.att_file(part) for part in parts], combined_att)

    def create_genome_list_file(self, step_dir: Path, parts: Iterable[str]) -> Path:
        genome_list_file = step_dir / "genomes.list"
        logger.debug(f"Creating genome_list_file: {genome_list_file}")
        with open(genome_list_file, 'w') as f:
            for part in parts:
                f.write(f"{part}\n")
        return genome_list_file

    def run_run_panoct(self, step_dir: Path, combined_fasta: Optional[Path] = None,
                       combined_att: Optional[Path] = None, genome_list: Optional[Path] = None) -> None:
        """Run run_panoct.pl in a step directory (or the working directory)."""
        config = self.config
        cmd = [config.executable(RUNPANOCT_EXEC), '-w', str(step_dir)]
        if config.project_code:
            cmd += ['-P', config.project_code]
        if genome_list:
            cmd += ['-g', str(genome_list)]
        if combined_att:
            cmd += ['-a', str(combined_att)]
        if combined_fasta:
            cmd += ['-f', str(combined_fasta)]
        if config.use_nuc:
            cmd.append('--use_nuc')
        if config.less_strict_panoct:
            cmd += ['--strict', 'low']
        if config.panoct_local:
            cmd.append('--panoct_local')
        if config.blast_local:
            cmd.append('--blast_local')
        if config.no_blast:
            blast_file = Path(step_dir) / "combined.blast"
            if not blast_file.is_file():
                raise ConfigurationError(f"--no-blast used, but can't find combined.blast in {step_dir}")
            cmd += ['--blast_file', str(blast_file)]

        run_command(cmd, cwd=step_dir)

    def create_pseudo_genome_files(self, step_name: str) -> None:
        """Write the step's pseudo-genome fasta and att files for later steps."""
        results = self.workspace.results_dir(step_name)
        att_file = self.workspace.att_file(step_name)

        cmd = [self.config.executable(GENE_ORDER_EXEC),
               '-W', str(results / "cluster_weights.txt"),
               '-M', str(results / "0_core_adjacency_vector.txt"),
               '-C', str(results / "centroids.fasta"),
               '-A', str(att_file),
               '-g', str(self.workspace.fasta_file(step_name)),
               '-l', '5',
               '-p', step_name]
        if not self.config.use_nuc:
            cmd.append('-P')

        logger.info(f"Creating pseudo-genome files for {step_name}")
        run_command(cmd, cwd=self.workspace.step_dir(step_name))

        if not att_file.is_file():
            raise ExternalToolError(f"Didn't create att_file {att_file} from {GENE_ORDER_EXEC}")

    def run_step(self, step: Step) -> None:
        """Build inputs, cluster, and synthesize the pseudo-genome for one step."""
        logger.info(f"Working on step {step.name}")
        step_dir = self.workspace.step_dir(step.name)
        step_fasta_dir = step_dir / "fasta_dir"
        step_fasta_dir.mkdir(parents=True, exist_ok=True)

        combined_fasta = self.make_combined_fasta(step_fasta_dir, step.parts)
        combined_att = self.make_combined_att(step_dir, step.parts)
        genome_list = self.create_genome_list_file(step_dir, step.parts)

        self.run_run_panoct(step_dir, combined_fasta, combined_att, genome_list)
        self.create_pseudo_genome_files(step.name)


@contextmanager
def log_to_file(log_path: Path):
    """Copy log records to a file for the duration of a run.

    The root logger is lowered to INFO while the file is open if it is set
    higher, so the log is complete even without setup_logging().
    """
    handler = logging.FileHandler(log_path, mode='w')
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    root = logging.getLogger()
    previous_level = root.level
    if root.getEffectiveLevel() > logging.INFO:
        root.setLevel(logging.INFO)
    root.addHandler(handler)
    try:
        yield handler
    finally:
        root.removeHandler(handler)
        root.setLevel(previous_level)
        handler.close()


class IterativePipeline:
    """Runs every step of an itinerary, then expands the final results."""

    def __init__(self, config: PipelineConfig, command: str = ""):
        self.config = config
        self.command = command or ' '.join(sys.argv)
        self.workspace = config.workspace()
        self.executor = StepExecutor(config)

    def run(self) -> Optional[ExpansionReport]:
        """Run the pipeline.

        Returns:
            ExpansionReport of the iterative run, or None for a
            non-iterative run (no cluster file)
        """
        self.config.validate()
        with log_to_file(self.workspace.log_file):
            if self.config.cluster_file is None:
                logger.info("No cluster_file found. Proceeding with non-iterative pangenome.")
                self.executor.run_run_panoct(self.workspace.working_dir)
                return None

            logger.info(f"Cluster file: {self.config.cluster_file}. Proceeding with iterative pangenome run.")
            return self._run_iterative()

    def _run_iterative(self) -> ExpansionReport:
        config = self.config
        genome_order = GenomeOrder.from_file(config.genome_list_file)
        itinerary = build_itinerary(config.cluster_file, self.workspace)

        state = load_or_create_state(
            config.working_dir, config.cluster_file, config.genome_list_file,
            parameters=config.to_parameters(), command=self.command, version=__version__,
            resume=config.resume, force=config.force_input_change
        )
        state.save(config.working_dir)

        if config.rerun_groups:
            logger.info(f"Rerunning groups: {','.join(config.rerun_groups)}")

        if not config.expand_only:
            self.run_steps(itinerary, state)

        logger.info("Time to expand clusters!")
        report = self.expand(itinerary, genome_order)
        state.expansion = report.to_dict()
        state.save(config.working_dir)

        combined = self.run_statistics(genome_order)
        self.final_panoct_run(combined)

        state.status = "completed"
        state.save(config.working_dir)
        return report

    def should_run(self, step: Step, state: PipelineState) -> bool:
        if self.config.rerun_groups:
            return step.name in self.config.rerun_groups
        if self.config.resume and state.is_step_complete(step.name):
            return False
        return True

    def run_steps(self, itinerary: Itinerary, state: PipelineState) -> None:
        for step in itinerary:
            if not self.should_run(step, state):
                logger.info(f"Skipping {step.name}")
                continue
            self.executor.run_step(step)
            state.mark_step_complete(step.name)
            state.save(self.config.working_dir)

    def expand(self, itinerary: Itinerary, genome_order: GenomeOrder) -> ExpansionReport:
        """Expand pseudo-loci in the final step's results."""
        locus_index = LocusGenomeIndex.from_att_files(
            self.workspace.att_file(genome) for genome in itinerary.raw_genomes()
        )
        driver = ExpansionDriver(
            self.workspace, itinerary, genome_order, locus_index,
            allow_duplicates=self.config.allow_duplicate_genomes,
            show_progress=self.config.show_progress
        )
        frameshift_output = Path(f"{Path(self.config.cluster_file).resolve()}.frameshifts")
        return driver.run(frameshift_output=frameshift_output)

    def run_statistics(self, genome_order: GenomeOrder) -> Dict[str, Path]:
        """Combine all genomes' inputs and run pangenome statistics.

        Returns:
            Paths of the combined att, att.dat and fasta files
        """
        workspace = self.workspace
        stat_dir = workspace.stats_dir
        stat_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Creating final combined files")
        combined_att = concatenate_files(
            [workspace.att_file(genome) for genome in genome_order],
            stat_dir / f"combined{workspace.att_suffix}"
        )
        combined_fasta = concatenate_files(
            [workspace.fasta_file(genome) for genome in genome_order],
            stat_dir / "combined.fasta"
        )

        run_command([self.config.executable(CONVERT_ATT_EXEC), str(combined_att), str(stat_dir)], cwd=stat_dir)
        combined_att_dat = Path(f"{combined_att}.dat")

        cmd = [self.config.executable(STATISTICS_EXEC),
               '-a', str(combined_att_dat),
               '-m', str(workspace.working_dir / "matchtable.txt.expanded"),
               '-l', str(self.config.genome_list_file),
               '-c', str(workspace.working_dir / "centroids.fasta.expanded")]
        cmd += ['-n' if self.config.use_nuc else '-s', str(combined_fasta)]
        run_command(cmd, cwd=stat_dir)

        return {'att': combined_att, 'att_dat': combined_att_dat, 'fasta': combined_fasta}

    def final_panoct_run(self, combined: Dict[str, Path]) -> None:
        """Run PanOCT on the expanded match table, then gene_order.pl for fGI data."""
        workspace = self.workspace
        final_dir = workspace.final_run_dir
        final_dir.mkdir(parents=True, exist_ok=True)
        tagfile = Path(self.config.genome_list_file).name

        # Inputs linked under the names used by the commands below
        _replace_symlink(workspace.working_dir / "matchtable.txt.expanded", final_dir / "matchtable.txt.expanded")
        _replace_symlink(combined['att'], final_dir / "combined.att_file")
        _replace_symlink(combined['fasta'], final_dir / "combined.fasta")
        _replace_symlink(Path(self.config.genome_list_file).resolve(), final_dir / tagfile)
        _replace_symlink(workspace.working_dir / "centroids.fasta.expanded", final_dir / "centroids.fasta.expanded")
        _replace_symlink(workspace.cluster_sizes, final_dir / "cluster_sizes.txt")

        cmd = [self.config.executable(PANOCT_EXEC),
               '-R', 'matchtable.txt.expanded',
               '-f', tagfile,
               '-g', 'combined.att_file',
               '-P', 'combined.fasta',
               '-b', str(final_dir),
               '-c', '0,95']
        run_command(cmd, cwd=final_dir, stdout_path=final_dir / "final_panoct.log")

        cmd = [self.config.executable(GENE_ORDER_EXEC), '-P',
               '-W', './cluster_sizes.txt',
               '-M', './95_core_adjacency_vector.txt',
               '-m', './0_core_adjacency_vector.txt',
               '-C', './centroids.fasta.expanded',
               '-t', tagfile,
               '-A', 'core.att',
               '-a', 'fGI.att',
               '-I', 'fGI_report.txt']
        run_command(cmd, cwd=final_dir, stdout_path=final_dir / "gene_order.txt")
