"""Tests for run state persistence and resume support."""

import json
import pytest
from pathlib import Path

from iterpan.errors import ConfigurationError
from iterpan.state import (
    PipelineState,
    InputInfo,
    STATE_FILENAME,
    compute_file_hash,
    create_initial_state,
    load_or_create_state
)


def _write_inputs(tmp_path: Path):
    cluster_file = tmp_path / "clusters.list"
    genome_list = tmp_path / "genomes.list"
    cluster_file.write_text("L1B1(GenomeA,GenomeB)\n")
    genome_list.write_text("GenomeA\nGenomeB\n")
    return cluster_file, genome_list


class TestComputeFileHash:
    """Tests for file hashing."""

    def test_hash_consistency(self, tmp_path):
        """Test that hashing the same file twice produces same hash."""
        test_file = tmp_path / "test.txt"
        test_file.write_text("test content")

        hash1 = compute_file_hash(test_file)
        assert hash1 == compute_file_hash(str(test_file))
        assert len(hash1) == 64  # SHA256 produces 64 hex characters

    def test_different_content_different_hash(self, tmp_path):
        file1 = tmp_path / "test1.txt"
        file2 = tmp_path / "test2.txt"
        file1.write_text("content 1")
        file2.write_text("content 2")
        assert compute_file_hash(file1) != compute_file_hash(file2)


class TestPipelineState:
    """Tests for PipelineState serialization."""

    def test_save_and_load(self, tmp_path):
        """Test that state can be saved and loaded."""
        state = PipelineState(
            version="0.1.0",
            status="in_progress",
            input=InputInfo(
                cluster_file="clusters.list",
                cluster_file_hash="abc123",
                genome_list_file="genomes.list",
                genome_list_hash="def456"
            ),
            parameters={"use_nuc": False, "project_code": "XYZ"},
            completed_steps=["L1B1", "L1B2"],
            command_history=["iterpan -w run"],
            start_time="2025-01-01T00:00:00"
        )
        state.save(tmp_path)

        assert (tmp_path / STATE_FILENAME).exists()
        assert not (tmp_path / f".{STATE_FILENAME}.tmp").exists()

        loaded = PipelineState.load(tmp_path)
        assert loaded.input.cluster_file_hash == "abc123"
        assert loaded.parameters["project_code"] == "XYZ"
        assert loaded.completed_steps == ["L1B1", "L1B2"]
        assert loaded.command_history == ["iterpan -w run"]
        assert loaded.last_checkpoint != ""

    def test_metadata_nested_in_json(self, tmp_path):
        cluster_file, genome_list = _write_inputs(tmp_path)
        create_initial_state(cluster_file, genome_list, {}, "iterpan", "0.1.0").save(tmp_path)

        with open(tmp_path / STATE_FILENAME) as f:
            data = json.load(f)
        assert data["metadata"]["command_history"] == ["iterpan"]
        assert data["status"] == "in_progress"

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            PipelineState.load(tmp_path)

    def test_load_corrupted(self, tmp_path):
        (tmp_path / STATE_FILENAME).write_text("{not json")
        with pytest.raises(ValueError, match="corrupted"):
            PipelineState.load(tmp_path)

    def test_load_missing_keys(self, tmp_path):
        (tmp_path / STATE_FILENAME).write_text(json.dumps({"version": "0.1.0"}))
        with pytest.raises(ValueError):
            PipelineState.load(tmp_path)

    def test_mark_step_complete_once(self, tmp_path):
        cluster_file, genome_list = _write_inputs(tmp_path)
        state = create_initial_state(cluster_file, genome_list, {}, "iterpan", "0.1.0")

        state.mark_step_complete("L1B1")
        state.mark_step_complete("L1B1")

        assert state.completed_steps == ["L1B1"]
        assert state.is_step_complete("L1B1")
        assert not state.is_step_complete("L2B1")


class TestValidateInputs:
    """Tests for input change detection."""

    def test_unchanged_inputs(self, tmp_path):
        cluster_file, genome_list = _write_inputs(tmp_path)
        state = create_initial_state(cluster_file, genome_list, {}, "iterpan", "0.1.0")
        assert state.validate_inputs(cluster_file, genome_list)

    def test_changed_hierarchy_rejected(self, tmp_path):
        cluster_file, genome_list = _write_inputs(tmp_path)
        state = create_initial_state(cluster_file, genome_list, {}, "iterpan", "0.1.0")
        cluster_file.write_text("L1B1(GenomeA,GenomeC)\n")

        with pytest.raises(ConfigurationError, match="cluster_file"):
            state.validate_inputs(cluster_file, genome_list)

    def test_changed_inputs_forced(self, tmp_path):
        cluster_file, genome_list = _write_inputs(tmp_path)
        state = create_initial_state(cluster_file, genome_list, {}, "iterpan", "0.1.0")
        genome_list.write_text("GenomeB\nGenomeA\n")

        assert state.validate_inputs(cluster_file, genome_list, force=True)


class TestLoadOrCreateState:
    """Tests for choosing between a new and a resumed state."""

    def test_fresh_run_ignores_previous_state(self, tmp_path):
        cluster_file, genome_list = _write_inputs(tmp_path)
        previous = create_initial_state(cluster_file, genome_list, {}, "first", "0.1.0")
        previous.mark_step_complete("L1B1")
        previous.save(tmp_path)

        state = load_or_create_state(tmp_path, cluster_file, genome_list, {}, "second", "0.1.0")
        assert state.completed_steps == []
        assert state.command_history == ["second"]

    def test_resume_keeps_completed_steps(self, tmp_path):
        cluster_file, genome_list = _write_inputs(tmp_path)
        previous = create_initial_state(cluster_file, genome_list, {}, "first", "0.1.0")
        previous.mark_step_complete("L1B1")
        previous.status = "completed"
        previous.save(tmp_path)

        state = load_or_create_state(tmp_path, cluster_file, genome_list, {}, "second", "0.1.0",
                                     resume=True)
        assert state.completed_steps == ["L1B1"]
        assert state.status == "in_progress"
        assert state.command_history == ["first", "second"]

    def test_resume_without_state_starts_fresh(self, tmp_path):
        cluster_file, genome_list = _write_inputs(tmp_path)
        state = load_or_create_state(tmp_path, cluster_file, genome_list, {}, "iterpan", "0.1.0",
                                     resume=True)
        assert state.completed_steps == []

    def test_resume_with_changed_inputs(self, tmp_path):
        cluster_file, genome_list = _write_inputs(tmp_path)
        create_initial_state(cluster_file, genome_list, {}, "first", "0.1.0").save(tmp_path)
        cluster_file.write_text("L1B1(GenomeB,GenomeA)\n")

        with pytest.raises(ConfigurationError):
            load_or_create_state(tmp_path, cluster_file, genome_list, {}, "second", "0.1.0",
                                 resume=True)
