"""Persistent run state for iterative pangenome runs.

The state JSON records which steps have finished so that ``--resume`` can
skip them. Step outputs on disk are the source of truth; the state only
holds metadata, input hashes and step names.
"""

import json
import hashlib
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Any, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"


def compute_file_hash(file_path) -> str:
    """Compute SHA256 hash of a file.

    Args:
        file_path: Path to file

    Returns:
        Hexadecimal SHA256 hash string
    """
    sha256 = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(8192), b''):
            sha256.update(chunk)
    return sha256.hexdigest()


@dataclass
class InputInfo:
    """Hierarchy definition and genome list used for the run."""
    cluster_file: str
    cluster_file_hash: str
    genome_list_file: str
    genome_list_hash: str


@dataclass
class PipelineState:
    """Persistent state for an iterative run."""
    version: str
    status: str  # "in_progress", "completed"
    input: InputInfo
    parameters: Dict[str, Any] = field(default_factory=dict)
    completed_steps: List[str] = field(default_factory=list)
    expansion: Dict[str, Any] = field(default_factory=dict)

    # Metadata
    command_history: List[str] = field(default_factory=list)
    start_time: str = ""
    last_checkpoint: str = ""

    def save(self, working_dir: Path) -> None:
        """Save state to working_dir/state.json.

        Uses atomic write (temp file + rename) to prevent corruption.
        """
        working_dir = Path(working_dir)
        state_file = working_dir / STATE_FILENAME
        temp_file = working_dir / f".{STATE_FILENAME}.tmp"

        self.last_checkpoint = datetime.now().isoformat()

        with open(temp_file, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        temp_file.replace(state_file)
        logger.debug(f"State saved to {state_file}")

    @classmethod
    def load(cls, working_dir: Path) -> 'PipelineState':
        """Load state from working_dir/state.json.

        Raises:
            FileNotFoundError: If state.json doesn't exist
            ValueError: If state.json is invalid
        """
        state_file = Path(working_dir) / STATE_FILENAME

        if not state_file.exists():
            raise FileNotFoundError(f"State file not found: {state_file}")

        try:
            with open(state_file, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid state file (corrupted JSON): {e}")

        try:
            return cls.from_dict(data)
        except (KeyError, TypeError) as e:
            raise ValueError(f"Failed to load state: {e}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert state to dictionary for JSON serialization."""
        return {
            'version': self.version,
            'status': self.status,
            'input': asdict(self.input),
            'parameters': self.parameters,
            'completed_steps': self.completed_steps,
            'expansion': self.expansion,
            'metadata': {
                'command_history': self.command_history,
                'start_time': self.start_time,
                'last_checkpoint': self.last_checkpoint,
            }
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PipelineState':
        """Create PipelineState from dictionary loaded from JSON."""
        metadata = data.get('metadata', {})
        return cls(
            version=data['version'],
            status=data['status'],
            input=InputInfo(**data['input']),
            parameters=data.get('parameters', {}),
            completed_steps=list(data.get('completed_steps', [])),
            expansion=data.get('expansion', {}),
            command_history=metadata.get('command_history', []),
            start_time=metadata.get('start_time', ''),
            last_checkpoint=metadata.get('last_checkpoint', ''),
        )

    def validate_inputs(self, cluster_file, genome_list_file, force: bool = False) -> bool:
        """Verify the hierarchy definition and genome list match the recorded hashes.

        Args:
            cluster_file: Path to the hierarchy definition
            genome_list_file: Path to the genome list
            force: If True, allow mismatches with a warning

        Returns:
            True if hashes match or force=True

        Raises:
            ConfigurationError: If a hash doesn't match and force=False
        """
        mismatches = []
        if compute_file_hash(cluster_file) != self.input.cluster_file_hash:
            mismatches.append(f"cluster_file {cluster_file}")
        if compute_file_hash(genome_list_file) != self.input.genome_list_hash:
            mismatches.append(f"genome_list_file {genome_list_file}")

        if not mismatches:
            return True

        if force:
            for mismatch in mismatches:
                logger.warning(f"Input changed since the previous run (forced continuation): {mismatch}")
            return True

        raise ConfigurationError(
            "Inputs have changed since the previous run: " + ", ".join(mismatches) +
            "\nStart a fresh run or use --force-input-change (may cause inconsistencies)."
        )

    def is_step_complete(self, step_name: str) -> bool:
        return step_name in self.completed_steps

    def mark_step_complete(self, step_name: str) -> None:
        if step_name not in self.completed_steps:
            self.completed_steps.append(step_name)

    def add_command(self, command: str) -> None:
        self.command_history.append(command)


def create_initial_state(cluster_file, genome_list_file, parameters: Dict[str, Any],
                         command: str, version: str) -> PipelineState:
    """Create initial state for a new iterative run."""
    cluster_path = Path(cluster_file).resolve()
    genome_list_path = Path(genome_list_file).resolve()

    state = PipelineState(
        version=version,
        status="in_progress",
        input=InputInfo(
            cluster_file=str(cluster_path),
            cluster_file_hash=compute_file_hash(cluster_path),
            genome_list_file=str(genome_list_path),
            genome_list_hash=compute_file_hash(genome_list_path),
        ),
        parameters=parameters,
        start_time=datetime.now().isoformat(),
    )
    state.add_command(command)
    return state


def load_or_create_state(working_dir: Path, cluster_file, genome_list_file,
                         parameters: Dict[str, Any], command: str, version: str,
                         resume: bool = False, force: bool = False) -> PipelineState:
    """Load the previous state when resuming, otherwise start a new one."""
    if resume and (Path(working_dir) / STATE_FILENAME).exists():
        state = PipelineState.load(working_dir)
        state.validate_inputs(cluster_file, genome_list_file, force=force)
        state.status = "in_progress"
        state.add_command(command)
        logger.info(f"Resuming run with {len(state.completed_steps)} completed steps")
        return state

    if resume:
        logger.warning(f"No {STATE_FILENAME} in {working_dir}; starting a new run")
    return create_initial_state(cluster_file, genome_list_file, parameters, command, version)
