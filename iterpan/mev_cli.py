"""CLI for the iterpan-mev command."""

import argparse
import logging
import sys
from pathlib import Path

from .mev_table import create_mev_table


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def main():
    """Main entry point for iterpan-mev CLI."""
    parser = argparse.ArgumentParser(
        description='Format a PanOCT match table as a .mev presence/absence table',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  iterpan-mev -m matchtable.txt.expanded -g genomes.list -a combined.att
  iterpan-mev -m matchtable.txt -g genomes.list -a combined.att -o mev_out
        """
    )
    parser.add_argument('-m', '--matchtable', required=True, help='Match table created by PanOCT')
    parser.add_argument('-g', '--genomes-list', required=True, help='List of genomes, in column order')
    parser.add_argument('-a', '--att-file', required=True, help='Genome attribute file')
    parser.add_argument('-o', '--output', help='Output directory (default: current dir)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    args = parser.parse_args()
    setup_logging(args.verbose)

    try:
        output_dir = Path(args.output) if args.output else Path.cwd()
        create_mev_table(Path(args.matchtable), Path(args.genomes_list), Path(args.att_file), output_dir)
    except Exception as e:
        logging.error(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
