"""Sinks for association outcomes.

IncrementalAssocWriter writes results in GEMMA .assoc.txt format as they
arrive, plus a sidecar file listing untested markers with their reason.
ListSink keeps every outcome in memory, in order.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from relmm.core.config import TestType
from relmm.lmm.stats import AssocResult, SkipNotice

BASE_COLUMNS = ("chr", "rs", "ps", "n_miss", "allele1", "allele0", "af")
SKIP_HEADER = "index\trs\treason\tdetail"


def result_columns(tests: Iterable[TestType]) -> tuple[str, ...]:
    """Column names for the requested tests, in GEMMA order.

    -lmm 1: beta se logl_H1 l_remle p_wald
    -lmm 2: l_mle p_lrt
    -lmm 3: beta se p_score
    -lmm 4: beta se logl_H1 l_remle l_mle p_wald p_lrt p_score

    Every layout ends with a status column: converged, boundary (lambda
    clamped to a search bound) or grid_fallback (Newton-Raphson failed).
    Only the worst status over the lambdas the statistics used is kept.
    """
    tests = frozenset(tests)
    cols = list(BASE_COLUMNS)
    if TestType.WALD in tests or TestType.SCORE in tests:
        cols += ["beta", "se"]
    if TestType.WALD in tests:
        cols += ["logl_H1", "l_remle"]
    if TestType.LRT in tests:
        cols.append("l_mle")
    if TestType.WALD in tests:
        cols.append("p_wald")
    if TestType.LRT in tests:
        cols.append("p_lrt")
    if TestType.SCORE in tests:
        cols.append("p_score")
    cols.append("status")
    return tuple(cols)


def _fmt(value: float | None) -> str:
    return "nan" if value is None else f"{value:.6e}"


def format_assoc_line(result: AssocResult, columns: tuple[str, ...]) -> str:
    """Format one result as a tab-separated line (no newline).

    Matches GEMMA's WriteFiles formatting: af with .3f, statistics with .6e.
    """
    values = {
        "chr": result.chrom,
        "rs": result.marker_id,
        "ps": str(result.pos),
        "n_miss": str(result.n_miss),
        "allele1": result.allele1,
        "allele0": result.allele0,
        "af": f"{result.af:.3f}",
        "beta": _fmt(result.beta),
        "se": _fmt(result.se),
        "logl_H1": _fmt(result.logl_H1),
        "l_remle": _fmt(result.lambda_val),
        "l_mle": _fmt(result.l_mle),
        "p_wald": _fmt(result.p_wald),
        "p_lrt": _fmt(result.p_lrt),
        "p_score": _fmt(result.p_score),
        "status": result.status.value,
    }
    return "\t".join(values[c] for c in columns)


def format_skip_line(notice: SkipNotice) -> str:
    return "\t".join(
        [str(notice.index), notice.marker_id, notice.reason.value, notice.detail]
    )


def default_skip_path(path: Path) -> Path:
    """foo.assoc.txt -> foo.skipped.txt"""
    name = path.name
    if name.endswith(".assoc.txt"):
        return path.with_name(name[: -len(".assoc.txt")] + ".skipped.txt")
    return path.with_name(name + ".skipped.txt")


class IncrementalAssocWriter:
    """Write association outcomes incrementally to disk.

    Context manager that writes results immediately as they are produced,
    avoiding memory accumulation for large scans.

    Example:
        with IncrementalAssocWriter(Path("out.assoc.txt"), tests={TestType.WALD}) as w:
            run_association(markers, y, K, sink=w)
        print(f"Wrote {w.count} results, {w.skip_count} skipped")
    """

    def __init__(
        self,
        path: Path,
        tests: Iterable[TestType] = (TestType.WALD,),
        skip_path: Path | None = None,
    ):
        self.path = Path(path)
        self.skip_path = Path(skip_path) if skip_path else default_skip_path(self.path)
        self.columns = result_columns(tests)
        self._file = None
        self._skip_file = None
        self._count = 0
        self._skip_count = 0

    def __enter__(self) -> IncrementalAssocWriter:
        """Open files and write headers."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "w")
        self._file.write("\t".join(self.columns) + "\n")
        self._skip_file = open(self.skip_path, "w")
        self._skip_file.write(SKIP_HEADER + "\n")
        return self

    def write(self, result: AssocResult) -> None:
        if self._file is None:
            raise RuntimeError("Writer not opened. Use as context manager.")
        self._file.write(format_assoc_line(result, self.columns) + "\n")
        self._count += 1

    def skip(self, notice: SkipNotice) -> None:
        if self._skip_file is None:
            raise RuntimeError("Writer not opened. Use as context manager.")
        self._skip_file.write(format_skip_line(notice) + "\n")
        self._skip_count += 1

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close files."""
        for f in (self._file, self._skip_file):
            if f:
                f.close()
        self._file = None
        self._skip_file = None

    @property
    def count(self) -> int:
        """Number of results written."""
        return self._count

    @property
    def skip_count(self) -> int:
        """Number of skip notices written."""
        return self._skip_count


class ListSink:
    """Collects outcomes in memory in the order they are delivered."""

    def __init__(self) -> None:
        self.events: list[AssocResult | SkipNotice] = []

    def write(self, result: AssocResult) -> None:
        self.events.append(result)

    def skip(self, notice: SkipNotice) -> None:
        self.events.append(notice)

    @property
    def results(self) -> list[AssocResult]:
        return [e for e in self.events if isinstance(e, AssocResult)]

    @property
    def skipped(self) -> list[SkipNotice]:
        return [e for e in self.events if isinstance(e, SkipNotice)]

    def __len__(self) -> int:
        return len(self.events)
