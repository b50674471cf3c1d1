"""I/O adapters for relmm.

- markers: Marker records and in-memory marker streams
- plink: PLINK binary format (.bed/.bim/.fam) streaming
- kinship: GEMMA-format kinship matrices
- covariate: GEMMA-format covariate files
"""

from relmm.io.covariate import read_covariate_file
from relmm.io.kinship import read_kinship_matrix, write_kinship_matrix
from relmm.io.markers import Marker, iter_matrix_markers
from relmm.io.plink import get_plink_metadata, iter_plink_markers, read_fam_phenotypes

__all__ = [
    "Marker",
    "get_plink_metadata",
    "iter_matrix_markers",
    "iter_plink_markers",
    "read_covariate_file",
    "read_fam_phenotypes",
    "read_kinship_matrix",
    "write_kinship_matrix",
]
