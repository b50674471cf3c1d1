"""PLINK binary format I/O using bed-reader.

Genotypes are streamed marker by marker from windowed reads of the .bed
file, so the full genotype matrix is never held in memory.
"""

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import numpy as np
from bed_reader import open_bed
from loguru import logger

from relmm.io.markers import Marker


def _bed_path(bfile: Path) -> Path:
    bed_path = Path(f"{bfile}.bed")
    if not bed_path.exists():
        raise FileNotFoundError(f"PLINK .bed file not found: {bed_path}")
    return bed_path


def get_plink_metadata(bfile: Path) -> dict[str, Any]:
    """Get PLINK file metadata without loading genotypes.

    Args:
        bfile: Path prefix for PLINK files (without .bed/.bim/.fam extension).

    Returns:
        Dictionary with keys n_samples, n_snps, iid, sid, chromosome,
        bp_position, allele_1, allele_2.

    Raises:
        FileNotFoundError: If the .bed file does not exist.
    """
    with open_bed(_bed_path(bfile)) as bed:
        return {
            "n_samples": bed.iid_count,
            "n_snps": bed.sid_count,
            "iid": bed.iid,
            "sid": bed.sid,
            "chromosome": bed.chromosome,
            "bp_position": bed.bp_position,
            "allele_1": bed.allele_1,
            "allele_2": bed.allele_2,
        }


def read_fam_phenotypes(bfile: Path, column: int = 1) -> np.ndarray:
    """Read phenotypes from the .fam file.

    Phenotype column 1 is the sixth .fam field; column k reads field 5 + k,
    as GEMMA's -n option does. "NA" and -9 are returned as NaN.

    Args:
        bfile: Path prefix for PLINK files.
        column: 1-based phenotype column.

    Returns:
        (n_samples,) float64 array.
    """
    fam_path = Path(f"{bfile}.fam")
    if not fam_path.exists():
        raise FileNotFoundError(f"PLINK .fam file not found: {fam_path}")

    values = []
    with open(fam_path) as f:
        for lineno, line in enumerate(f, start=1):
            parts = line.split()
            if not parts:
                continue
            field = 4 + column
            if len(parts) <= field:
                raise ValueError(
                    f"{fam_path}:{lineno}: expected at least {field + 1} fields"
                )
            token = parts[field]
            if token == "NA":
                values.append(np.nan)
                continue
            try:
                value = float(token)
            except ValueError as e:
                raise ValueError(
                    f"{fam_path}:{lineno}: cannot parse phenotype '{token}'"
                ) from e
            values.append(np.nan if value == -9 else value)
    return np.asarray(values, dtype=np.float64)


def iter_plink_markers(
    bfile: Path, chunk_size: int = 10_000
) -> Iterator[Marker]:
    """Stream markers from a PLINK .bed file.

    Opens the file once and reads chunk_size markers per windowed read.
    Dosages count allele_1 (bed-reader's count_A1 default), so allele1 is
    the counted allele.

    Memory: O(n_samples * chunk_size), never O(n_samples * n_snps).

    Args:
        bfile: Path prefix for PLINK files.
        chunk_size: Markers per windowed read.

    Yields:
        Marker objects in file order; missing calls are NaN.
    """
    with open_bed(_bed_path(bfile)) as bed:
        n_samples = bed.iid_count
        n_snps = bed.sid_count
        sid = bed.sid
        chromosome = bed.chromosome
        bp_position = bed.bp_position
        allele_1 = bed.allele_1
        allele_2 = bed.allele_2

        logger.info(
            f"Streaming {n_snps} markers in chunks of {chunk_size} "
            f"({n_samples} samples)"
        )

        for start in range(0, n_snps, chunk_size):
            end = min(start + chunk_size, n_snps)
            chunk = bed.read(index=np.s_[:, start:end], dtype=np.float64)
            for j in range(end - start):
                k = start + j
                yield Marker(
                    marker_id=str(sid[k]),
                    dosages=np.ascontiguousarray(chunk[:, j]),
                    chrom=str(chromosome[k]),
                    pos=int(bp_position[k]),
                    allele1=str(allele_1[k]),
                    allele0=str(allele_2[k]),
                )
