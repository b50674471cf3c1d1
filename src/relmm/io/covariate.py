"""GEMMA-format covariate file I/O.

GEMMA covariate file format:
- Whitespace delimited, no header row
- Row order matches the .fam file (positional matching, not ID-based)
- Missing values encoded as "NA" (case-sensitive)
- First column must be all 1s for the model to include an intercept;
  no intercept column is added automatically
"""

from pathlib import Path

import numpy as np


def read_covariate_file(path: Path) -> np.ndarray:
    """Read GEMMA-format covariate file.

    Args:
        path: Path to the covariate file.

    Returns:
        (n_samples, n_cvt) float64 array with NaN for "NA". Rows containing
        NaN are excluded from the analysis by the runner.

    Raises:
        ValueError: If the file is empty, rows have inconsistent column
            counts, or a value is not numeric (other than "NA").

    Example:
        Covariate file contents (intercept + age + sex):
        ```
        1  35.0  0
        1  42.0  1
        1  NA    1
        ```
    """
    rows: list[list[str]] = []
    with open(path) as f:
        for line in f:
            stripped = line.strip()
            if stripped:
                rows.append(stripped.split())

    if not rows:
        raise ValueError(f"Covariate file is empty: {path}")

    n_cvt = len(rows[0])
    covariates = np.empty((len(rows), n_cvt), dtype=np.float64)

    for i, row in enumerate(rows):
        if len(row) != n_cvt:
            raise ValueError(
                f"Covariate file row {i + 1} has {len(row)} columns "
                f"but expected {n_cvt} (based on first row)"
            )
        for j, val in enumerate(row):
            if val == "NA":
                covariates[i, j] = np.nan
                continue
            try:
                covariates[i, j] = float(val)
            except ValueError as e:
                raise ValueError(
                    f"Covariate file row {i + 1}, column {j + 1}: "
                    f"cannot parse '{val}' as numeric (use 'NA' for missing)"
                ) from e

    return covariates
