"""Conversion of a PanOCT match table into a ``.mev`` presence/absence table.

Each output row describes one cluster: the attributes of its first present
locus, the cluster id and a 1/0 flag per genome column.
"""

import logging
from pathlib import Path
from typing import Dict, List, Tuple

import numpy as np

from .errors import ConfigurationError
from .locus_ids import is_absent_marker

logger = logging.getLogger(__name__)

MEV_ATTRIBUTE_HEADERS = [
    "assembly",
    "locus",
    "end5",
    "end3",
    "protein name",
    "genome",
    "protein length",
    "TIGRFAM Role ID",
    "HMMs",
]


def load_genome_list(genomes_list: Path) -> List[str]:
    with open(genomes_list) as f:
        return [line.strip() for line in f if line.strip()]


def load_att_records(att_file: Path) -> Dict[str, List[str]]:
    """Map locus (field 2) to the full tab-split attribute record."""
    records = {}
    with open(att_file) as f:
        for line in f:
            line = line.rstrip()
            if not line:
                continue
            values = line.split('\t')
            if len(values) > 1:
                records[values[1]] = values
    return records


def load_matchtable_rows(matchtable: Path) -> List[Tuple[int, List[str]]]:
    """Read match table rows as (cluster number, cells), sorted by cluster number."""
    rows = []
    with open(matchtable) as f:
        for line in f:
            line = line.rstrip('\r\n')
            if not line.strip():
                continue
            fields = line.split('\t')
            rows.append((int(fields[0]), [cell.strip() for cell in fields[1:]]))
    rows.sort(key=lambda row: row[0])
    return rows


def presence_matrix(rows: List[Tuple[int, List[str]]], num_genomes: int) -> np.ndarray:
    """Clusters x genomes matrix with 1 where a locus is present."""
    matrix = np.zeros((len(rows), num_genomes), dtype=np.int8)
    for i, (cluster_num, cells) in enumerate(rows):
        if len(cells) > num_genomes:
            logger.warning(f"Cluster {cluster_num} has {len(cells)} columns but only "
                           f"{num_genomes} genomes are listed; extra columns ignored")
        for j, cell in enumerate(cells[:num_genomes]):
            if not is_absent_marker(cell):
                matrix[i, j] = 1
    return matrix


def attribute_values(cells: List[str], att_records: Dict[str, List[str]]) -> List[str]:
    """Attribute columns for a cluster, taken from its first present locus."""
    first_locus = next((cell for cell in cells if not is_absent_marker(cell)), None)
    if first_locus is None:
        return [""] * len(MEV_ATTRIBUTE_HEADERS)

    record = att_records.get(first_locus)
    if record is None:
        logger.warning(f"Locus '{first_locus}' not found in attribute file")
        return [""] * len(MEV_ATTRIBUTE_HEADERS)

    values = list(record[:len(MEV_ATTRIBUTE_HEADERS)])
    values += [""] * (len(MEV_ATTRIBUTE_HEADERS) - len(values))
    if len(record) > 5:
        values[0] = f"{record[5]}.{record[0]}"
    return values


def create_mev_table(matchtable: Path, genomes_list: Path, att_file: Path, output_dir: Path) -> Path:
    """Write ``<output_dir>/mev.table`` for a match table.

    Raises:
        ConfigurationError: If an input file is missing or empty
    """
    errors = []
    for path in (matchtable, genomes_list, att_file):
        if not Path(path).is_file() or Path(path).stat().st_size == 0:
            errors.append(f"{path} does not exist or is size zero")
    if errors:
        raise ConfigurationError("\n".join(errors))

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    genomes = load_genome_list(genomes_list)
    rows = load_matchtable_rows(matchtable)
    att_records = load_att_records(att_file)
    matrix = presence_matrix(rows, len(genomes))

    output_path = output_dir / "mev.table"
    with open(output_path, 'w') as f:
        f.write('\t'.join(MEV_ATTRIBUTE_HEADERS + ["cluster_id"] + genomes) + "\n")
        for (cluster_num, cells), flags in zip(rows, matrix):
            values = attribute_values(cells, att_records)
            f.write('\t'.join(values + [str(cluster_num)] + [str(int(flag)) for flag in flags]) + "\n")

    logger.info(f"Wrote {len(rows)} clusters x {len(genomes)} genomes to {output_path}")
    return output_path
