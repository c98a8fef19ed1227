"""
Command-line interface for the iterative pangenome pipeline.
"""

import argparse
import logging
import sys
from pathlib import Path

from .pipeline import PipelineConfig, IterativePipeline


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='iterpan: iterative, hierarchical PanOCT pangenome pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Without a cluster file (-c, or clusters.list in the working directory) PanOCT
is run once on all genomes. With one, each line defines a step, e.g.

  L1B1(GenomeA,GenomeB,GenomeC)
  L1B2(GenomeD,GenomeE)
  L2B1(L1B1,L1B2)

Examples:
  iterpan -w run_dir -P proj123               # Full iterative run
  iterpan -w run_dir --blast-local            # Run BLAST on this host
  iterpan -w run_dir --rerun-groups L1B2,L2B1 # Rerun only these steps
  iterpan -w run_dir --expand-only            # Only expand the final step's results
  iterpan -w run_dir --resume                 # Skip steps finished in a previous run
        """
    )

    # Input options
    parser.add_argument(
        '-w', '--working-dir',
        default=str(Path.cwd()),
        help='Directory holding fasta_dir/, att_dir/ and one directory per step (default: current dir)'
    )
    parser.add_argument(
        '-g', '--genome-list-file',
        help='List of genome names; its order determines column order (default: <working_dir>/genomes.list)'
    )
    parser.add_argument(
        '-c', '--cluster-file',
        help='Hierarchy definition determining the steps to run (default: <working_dir>/clusters.list if present)'
    )
    parser.add_argument(
        '--att-suffix',
        default='.att',
        help='Extension of gene attribute files (default: .att)'
    )
    parser.add_argument(
        '-n', '--use-nuc',
        action='store_true',
        help='Use nucleotide versions of blast programs and input files'
    )

    # Execution options
    parser.add_argument(
        '-P', '--project-code',
        help='Project code for grid accounting when BLAST/PanOCT jobs are farmed out'
    )
    parser.add_argument(
        '--blast-local',
        action='store_true',
        help='Run BLAST jobs on the current host instead of the grid'
    )
    parser.add_argument(
        '--panoct-local',
        action='store_true',
        help='Run PanOCT on the current host instead of the grid'
    )
    parser.add_argument(
        '--no-blast',
        action='store_true',
        help="Don't rerun BLAST; reuse each step's combined.blast"
    )
    parser.add_argument(
        '--less-strict-panoct',
        action='store_true',
        help='Reduce the strictness of PanOCT clustering'
    )
    parser.add_argument(
        '--bin-dir',
        help='Directory containing run_panoct.pl, panoct.pl, gene_order.pl and friends '
             '(default: $ITERPAN_BIN_DIR, then PATH)'
    )

    # Iterative options
    parser.add_argument(
        '--rerun-groups',
        help='Comma-separated list of steps to rerun; all other steps are skipped'
    )
    parser.add_argument(
        '--expand-only',
        action='store_true',
        help='Implies --no-blast; skip straight to expanding pseudo-genome names in the final step'
    )
    parser.add_argument(
        '--resume',
        action='store_true',
        help='Skip steps recorded as complete in <working_dir>/state.json'
    )
    parser.add_argument(
        '--force-input-change',
        action='store_true',
        help='Resume even if the cluster file or genome list changed'
    )
    parser.add_argument(
        '--allow-duplicate-genomes',
        action='store_true',
        help='When an expanded cluster has two loci from one genome, keep the later one '
             'instead of stopping with an error'
    )

    # Additional options
    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Disable progress bars'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    rerun_groups = [group.strip() for group in args.rerun_groups.split(',') if group.strip()] \
        if args.rerun_groups else []
    return PipelineConfig(
        working_dir=Path(args.working_dir),
        genome_list_file=Path(args.genome_list_file) if args.genome_list_file else None,
        cluster_file=Path(args.cluster_file) if args.cluster_file else None,
        att_suffix=args.att_suffix,
        use_nuc=args.use_nuc,
        no_blast=args.no_blast,
        blast_local=args.blast_local,
        panoct_local=args.panoct_local,
        project_code=args.project_code,
        less_strict_panoct=args.less_strict_panoct,
        rerun_groups=rerun_groups,
        expand_only=args.expand_only,
        resume=args.resume,
        force_input_change=args.force_input_change,
        allow_duplicate_genomes=args.allow_duplicate_genomes,
        bin_dir=Path(args.bin_dir) if args.bin_dir else None,
        show_progress=not args.no_progress,
    )


def main():
    """Main entry point for the iterpan CLI."""
    parser = build_parser()
    args = parser.parse_args()

    setup_logging(args.verbose)

    try:
        config = config_from_args(args)
        pipeline = IterativePipeline(config, command=' '.join(sys.argv))
        report = pipeline.run()

        if report is not None:
            logging.info(f"Final step {report.final_step}: {report.total_clusters} clusters, "
                         f"{report.total_loci} loci")
            for name, path in report.outputs.items():
                logging.info(f"  {name}: {path}")

        logging.debug("Done!")

    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(1)
    except Exception as e:
        logging.error(f"Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
