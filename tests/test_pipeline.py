"""Tests for step execution and pipeline orchestration.

External programs are never run; subprocess.run is mocked and the mock
creates whatever files the real program would leave behind.
"""

import json
import logging
import subprocess
import pytest
from pathlib import Path
from unittest.mock import MagicMock, patch

from iterpan.errors import ConfigurationError, ExternalToolError
from iterpan.itinerary import Step, build_itinerary
from iterpan.pipeline import (
    IterativePipeline,
    PipelineConfig,
    StepExecutor,
    concatenate_files,
    run_command
)
from iterpan.state import PipelineState, STATE_FILENAME

from hierarchy_builder import build_workspace


@pytest.fixture(autouse=True)
def no_bin_dir(monkeypatch):
    monkeypatch.delenv("ITERPAN_BIN_DIR", raising=False)


def _fake_tools(calls):
    """subprocess.run replacement that records commands and writes gene_order.pl outputs."""
    def fake_run(cmd, **kwargs):
        calls.append(list(cmd))
        if Path(cmd[0]).name == "gene_order.pl" and '-A' in cmd and '-g' in cmd:
            att_file = Path(cmd[cmd.index('-A') + 1])
            fasta_file = Path(cmd[cmd.index('-g') + 1])
            step_name = cmd[cmd.index('-p') + 1]
            att_file.parent.mkdir(parents=True, exist_ok=True)
            fasta_file.parent.mkdir(parents=True, exist_ok=True)
            att_file.write_text(f"{step_name}\t{step_name}_1\t1\t900\tcluster 1\t{step_name}\t300\n")
            fasta_file.write_text(f">{step_name}_1\nMKV\n")
        result = MagicMock()
        result.stdout = ""
        return result
    return fake_run


def _tool_names(calls):
    return [Path(cmd[0]).name for cmd in calls]


class TestPipelineConfig:
    """Test option defaults and validation."""

    def test_defaults_from_working_dir(self, tmp_path):
        build_workspace(tmp_path)
        config = PipelineConfig(working_dir=tmp_path)

        assert config.genome_list_file == tmp_path / "genomes.list"
        assert config.cluster_file == tmp_path / "clusters.list"
        config.validate()

    def test_no_cluster_file_found(self, tmp_path):
        (tmp_path / "genomes.list").write_text("GenomeA\n")
        assert PipelineConfig(working_dir=tmp_path).cluster_file is None

    def test_expand_only_implies_no_blast(self, tmp_path):
        config = PipelineConfig(working_dir=tmp_path, expand_only=True)
        assert config.no_blast

    def test_validate_reports_all_problems(self, tmp_path):
        config = PipelineConfig(working_dir=tmp_path / "missing", cluster_file=tmp_path / "nope.list")
        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()
        message = str(exc_info.value)
        assert "working directory" in message
        assert "genome_list_file" in message
        assert "cluster_file" in message

    def test_bin_dir_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ITERPAN_BIN_DIR", str(tmp_path))
        config = PipelineConfig(working_dir=tmp_path)
        assert config.executable("panoct.pl") == str(tmp_path / "panoct.pl")

    def test_parameters_are_json_serializable(self, tmp_path):
        config = PipelineConfig(working_dir=tmp_path, rerun_groups=["L1B1"])
        params = config.to_parameters()
        assert params["working_dir"] == str(tmp_path)
        json.dumps(params)


class TestRunCommand:
    """Test mapping of subprocess failures."""

    def test_nonzero_exit(self):
        error = subprocess.CalledProcessError(2, ["panoct.pl"], stderr="bad input")
        with patch('iterpan.pipeline.subprocess.run', side_effect=error):
            with pytest.raises(ExternalToolError, match="exit status 2"):
                run_command(["panoct.pl"])

    def test_missing_program(self):
        with patch('iterpan.pipeline.subprocess.run', side_effect=FileNotFoundError()):
            with pytest.raises(ExternalToolError, match="not found"):
                run_command(["panoct.pl"])

    def test_stdout_to_file(self, tmp_path):
        log_path = tmp_path / "tool.log"
        with patch('iterpan.pipeline.subprocess.run') as mock_run:
            run_command(["panoct.pl", "-b", "."], cwd=tmp_path, stdout_path=log_path)

        kwargs = mock_run.call_args[1]
        assert kwargs['cwd'] == tmp_path
        assert kwargs['stderr'] == subprocess.STDOUT
        assert kwargs['check'] is True
        assert log_path.exists()


class TestStepExecutor:
    """Test the work done for a single step."""

    def test_concatenate_files_in_order(self, tmp_path):
        first = tmp_path / "first.txt"
        second = tmp_path / "second.txt"
        first.write_text("one\n")
        second.write_text("two\n")
        combined = concatenate_files([second, first], tmp_path / "combined.txt")
        assert combined.read_text() == "two\none\n"

    def test_run_step(self, tmp_path):
        workspace = build_workspace(tmp_path)
        executor = StepExecutor(PipelineConfig(working_dir=tmp_path, project_code="PRJ", blast_local=True))
        calls = []

        with patch('iterpan.pipeline.subprocess.run', side_effect=_fake_tools(calls)):
            executor.run_step(Step("L1B1", ("GenomeA", "GenomeB")))

        step_dir = tmp_path / "L1B1"
        assert (step_dir / "genomes.list").read_text() == "GenomeA\nGenomeB\n"
        assert (step_dir / "combined.att").read_text() == (
            workspace.att_file("GenomeA").read_text() + workspace.att_file("GenomeB").read_text()
        )
        assert (step_dir / "fasta_dir" / "combined.fasta").exists()

        assert _tool_names(calls) == ["run_panoct.pl", "gene_order.pl"]
        run_panoct = calls[0]
        assert run_panoct[run_panoct.index('-w') + 1] == str(step_dir)
        assert run_panoct[run_panoct.index('-P') + 1] == "PRJ"
        assert run_panoct[run_panoct.index('-g') + 1] == str(step_dir / "genomes.list")
        assert '--blast_local' in run_panoct
        assert '--use_nuc' not in run_panoct

        gene_order = calls[1]
        assert gene_order[gene_order.index('-p') + 1] == "L1B1"
        assert gene_order[gene_order.index('-l') + 1] == "5"
        assert '-P' in gene_order
        assert workspace.att_file("L1B1").exists()

    def test_nucleotide_step(self, tmp_path):
        build_workspace(tmp_path)
        (tmp_path / "fasta_dir" / "GenomeA.nuc").write_text(">a_locus1\nATG\n")
        (tmp_path / "fasta_dir" / "GenomeB.nuc").write_text(">b_locus1\nATG\n")
        executor = StepExecutor(PipelineConfig(working_dir=tmp_path, use_nuc=True, less_strict_panoct=True))
        calls = []

        with patch('iterpan.pipeline.subprocess.run', side_effect=_fake_tools(calls)):
            executor.run_step(Step("L1B1", ("GenomeA", "GenomeB")))

        assert '--use_nuc' in calls[0]
        assert calls[0][-2:] == ['--strict', 'low']
        assert '-P' not in calls[1]
        assert (tmp_path / "fasta_dir" / "L1B1.nuc").exists()

    def test_pseudo_genome_att_not_created(self, tmp_path):
        build_workspace(tmp_path)
        executor = StepExecutor(PipelineConfig(working_dir=tmp_path))

        with patch('iterpan.pipeline.subprocess.run'):
            with pytest.raises(ExternalToolError, match="Didn't create att_file"):
                executor.create_pseudo_genome_files("L1B1")

    def test_no_blast_needs_existing_blast_file(self, tmp_path):
        build_workspace(tmp_path)
        executor = StepExecutor(PipelineConfig(working_dir=tmp_path, no_blast=True))

        with patch('iterpan.pipeline.subprocess.run') as mock_run:
            with pytest.raises(ConfigurationError, match="combined.blast"):
                executor.run_run_panoct(tmp_path / "L1B1")
            mock_run.assert_not_called()

            (tmp_path / "L1B1" / "combined.blast").write_text("")
            executor.run_run_panoct(tmp_path / "L1B1")

        cmd = mock_run.call_args[0][0]
        assert cmd[cmd.index('--blast_file') + 1] == str(tmp_path / "L1B1" / "combined.blast")


class TestStepSelection:
    """Test which steps are run for --rerun-groups and --resume."""

    def _pipeline_and_state(self, tmp_path, **options):
        build_workspace(tmp_path)
        config = PipelineConfig(working_dir=tmp_path, **options)
        pipeline = IterativePipeline(config, command="iterpan")
        pipeline.executor.run_step = MagicMock()
        state = MagicMock(spec=PipelineState)
        state.is_step_complete.side_effect = lambda name: name == "L1B1"
        itinerary = build_itinerary(config.cluster_file)
        return pipeline, state, itinerary

    def _run_step_names(self, pipeline):
        return [c[0][0].name for c in pipeline.executor.run_step.call_args_list]

    def test_all_steps_by_default(self, tmp_path):
        pipeline, state, itinerary = self._pipeline_and_state(tmp_path)
        pipeline.run_steps(itinerary, state)
        assert self._run_step_names(pipeline) == ["L1B1", "L1B2", "L2B1"]

    def test_rerun_groups(self, tmp_path):
        pipeline, state, itinerary = self._pipeline_and_state(tmp_path, rerun_groups=["L1B2", "L2B1"])
        pipeline.run_steps(itinerary, state)
        assert self._run_step_names(pipeline) == ["L1B2", "L2B1"]

    def test_resume_skips_completed(self, tmp_path):
        pipeline, state, itinerary = self._pipeline_and_state(tmp_path, resume=True)
        pipeline.run_steps(itinerary, state)
        assert self._run_step_names(pipeline) == ["L1B2", "L2B1"]


class TestIterativePipeline:
    """End-to-end runs with mocked external programs."""

    def test_expand_only(self, tmp_path):
        build_workspace(tmp_path)
        calls = []
        pipeline = IterativePipeline(PipelineConfig(working_dir=tmp_path, expand_only=True,
                                                    show_progress=False), command="iterpan --expand-only")

        with patch('iterpan.pipeline.subprocess.run', side_effect=_fake_tools(calls)):
            report = pipeline.run()

        assert report.final_step == "L2B1"
        assert report.total_clusters == 3
        assert _tool_names(calls) == [
            "convert_att_file_to_hsh.pl", "pangenome_statistics.pl", "panoct.pl", "gene_order.pl"
        ]

        assert (tmp_path / "matchtable.txt.expanded").read_text().startswith("1\ta_locus1\tb_locus1")
        assert (tmp_path / "centroids.fasta.expanded").exists()
        assert (tmp_path / "cluster_sizes.txt").exists()
        assert (tmp_path / "clusters.list.frameshifts").exists()
        assert (tmp_path / "run_pangenome.log").exists()

        final_dir = tmp_path / "final_panoct_run"
        assert (final_dir / "matchtable.txt.expanded").is_symlink()
        assert (final_dir / "genomes.list").is_symlink()
        assert (final_dir / "final_panoct.log").exists()
        assert (tmp_path / "stats" / "combined.att").exists()

        statistics = calls[1]
        assert statistics[statistics.index('-m') + 1] == str(tmp_path / "matchtable.txt.expanded")
        assert '-s' in statistics

        with open(tmp_path / STATE_FILENAME) as f:
            state = json.load(f)
        assert state["status"] == "completed"
        assert state["completed_steps"] == []
        assert state["expansion"]["total_clusters"] == 3

    def test_full_run_then_resume(self, tmp_path):
        build_workspace(tmp_path)
        calls = []

        with patch('iterpan.pipeline.subprocess.run', side_effect=_fake_tools(calls)):
            IterativePipeline(PipelineConfig(working_dir=tmp_path, show_progress=False)).run()

        assert _tool_names(calls)[:6] == ["run_panoct.pl", "gene_order.pl"] * 3
        assert (tmp_path / "L2B1" / "fasta_dir" / "combined.fasta").read_text() == (
            ">L1B1_1\nMKV\n>L1B2_1\nMKV\n"
        )
        state = PipelineState.load(tmp_path)
        assert state.completed_steps == ["L1B1", "L1B2", "L2B1"]

        calls.clear()
        with patch('iterpan.pipeline.subprocess.run', side_effect=_fake_tools(calls)):
            IterativePipeline(PipelineConfig(working_dir=tmp_path, resume=True, show_progress=False)).run()

        assert "run_panoct.pl" not in _tool_names(calls)
        assert len(PipelineState.load(tmp_path).command_history) == 2

    def test_relative_working_dir(self, tmp_path, monkeypatch):
        """Test a run given a working directory relative to the current one."""
        build_workspace(tmp_path / "run_dir")
        monkeypatch.chdir(tmp_path)
        calls = []

        config = PipelineConfig(working_dir=Path("run_dir"), expand_only=True, show_progress=False)
        assert config.working_dir.is_absolute()
        assert config.cluster_file.is_absolute()
        assert config.genome_list_file.is_absolute()

        with patch('iterpan.pipeline.subprocess.run', side_effect=_fake_tools(calls)):
            IterativePipeline(config).run()

        final_dir = tmp_path / "run_dir" / "final_panoct_run"
        links = [link for link in final_dir.iterdir() if link.is_symlink()]
        assert len(links) == 6
        assert [link.name for link in links if not link.exists()] == []

        statistics = calls[1]
        for flag in ('-a', '-m', '-l', '-c', '-s'):
            assert Path(statistics[statistics.index(flag) + 1]).is_absolute()

    def test_log_file_without_logging_setup(self, tmp_path):
        """Test that INFO records reach run_pangenome.log when the root logger is at WARNING."""
        build_workspace(tmp_path)
        root = logging.getLogger()
        previous_level = root.level
        root.setLevel(logging.WARNING)
        try:
            with patch('iterpan.pipeline.subprocess.run', side_effect=_fake_tools([])):
                IterativePipeline(PipelineConfig(working_dir=tmp_path, expand_only=True,
                                                 show_progress=False)).run()
            assert root.level == logging.WARNING
        finally:
            root.setLevel(previous_level)

        log_text = (tmp_path / "run_pangenome.log").read_text()
        assert "INFO - Time to expand clusters!" in log_text

    def test_non_iterative_run(self, tmp_path):
        (tmp_path / "genomes.list").write_text("GenomeA\nGenomeB\n")
        calls = []

        with patch('iterpan.pipeline.subprocess.run', side_effect=_fake_tools(calls)):
            report = IterativePipeline(PipelineConfig(working_dir=tmp_path)).run()

        assert report is None
        assert _tool_names(calls) == ["run_panoct.pl"]
        assert calls[0][calls[0].index('-w') + 1] == str(tmp_path)
        assert not (tmp_path / STATE_FILENAME).exists()

    def test_failed_step_stops_run(self, tmp_path):
        build_workspace(tmp_path)
        error = subprocess.CalledProcessError(1, ["run_panoct.pl"])

        with patch('iterpan.pipeline.subprocess.run', side_effect=error):
            with pytest.raises(ExternalToolError):
                IterativePipeline(PipelineConfig(working_dir=tmp_path)).run()

        assert PipelineState.load(tmp_path).completed_steps == []
        assert not (tmp_path / "matchtable.txt.expanded").exists()
