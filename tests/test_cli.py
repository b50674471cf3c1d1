"""Tests for the relmm CLI."""

from pathlib import Path

from typer.testing import CliRunner

from relmm.cli import app

runner = CliRunner()


def test_cli_help():
    """Test that --help shows usage with expected options."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "-outdir" in result.output
    assert "lmm" in result.output


def test_cli_version():
    """Test that --version shows version number."""
    import relmm

    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert relmm.__version__ in result.output


def test_cli_lmm_help():
    """Test that lmm --help shows all required options."""
    result = runner.invoke(app, ["lmm", "--help"])

    assert result.exit_code == 0
    assert "-bfile" in result.output
    assert "-k" in result.output
    assert "-lmm" in result.output
    assert "--workers" in result.output


def test_cli_lmm_requires_kinship(plink_study):
    """Test that lmm command requires -k (kinship) flag."""
    result = runner.invoke(app, ["lmm", "-bfile", str(plink_study["bfile"])])
    assert result.exit_code != 0


def test_cli_lmm_wald(tmp_path: Path, plink_study):
    """Wald run writes results, skip sidecar and a GEMMA-style log."""
    outdir = tmp_path / "output"
    result = runner.invoke(
        app,
        [
            "-outdir", str(outdir),
            "-o", "wald",
            "lmm",
            "-bfile", str(plink_study["bfile"]),
            "-k", str(plink_study["kinship"]),
            "-lmm", "1",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Association results written to" in result.output

    lines = (outdir / "wald.assoc.txt").read_text().splitlines()
    assert lines[0].split("\t")[-2:] == ["p_wald", "status"]
    assert all(ln.split("\t")[-1] in {"converged", "boundary", "grid_fallback"}
               for ln in lines[1:])
    assert len(lines) == plink_study["n_markers"] + 1
    assert (outdir / "wald.skipped.txt").exists()

    log = (outdir / "wald.log.txt").read_text()
    assert "## relmm Version" in log
    assert "n_analyzed_individuals = 199" in log
    assert "n_total_individuals = 200" in log
    assert "## Null Model (REML):" in log
    assert f"## n_tested = {plink_study['n_markers']}" in log


def test_cli_lmm_all_tests_parallel(tmp_path: Path, plink_study):
    """-lmm 4 with worker threads writes every statistic."""
    outdir = tmp_path / "output"
    result = runner.invoke(
        app,
        [
            "-outdir", str(outdir),
            "lmm",
            "-bfile", str(plink_study["bfile"]),
            "-k", str(plink_study["kinship"]),
            "-lmm", "4",
            "--workers", "2",
        ],
    )
    assert result.exit_code == 0, result.output
    lines = (outdir / "result.assoc.txt").read_text().splitlines()
    header = lines[0].split("\t")
    assert header[-4:] == ["p_wald", "p_lrt", "p_score", "status"]
    ids = [ln.split("\t")[1] for ln in lines[1:]]
    assert ids == [f"rs{j}" for j in range(plink_study["n_markers"])]


def test_cli_lmm_with_covariates(tmp_path: Path, plink_study, study):
    outdir = tmp_path / "output"
    cov = tmp_path / "cov.txt"
    cov.write_text(
        "".join(f"1 {v:.8f}\n" for v in study.covariates[:, 1])
    )
    result = runner.invoke(
        app,
        [
            "-outdir", str(outdir),
            "lmm",
            "-bfile", str(plink_study["bfile"]),
            "-k", str(plink_study["kinship"]),
            "-c", str(cov),
        ],
    )
    assert result.exit_code == 0, result.output
    assert (outdir / "result.assoc.txt").exists()


def test_cli_lmm_missing_kinship_file(tmp_path: Path, plink_study):
    result = runner.invoke(
        app,
        [
            "-outdir", str(tmp_path / "output"),
            "lmm",
            "-bfile", str(plink_study["bfile"]),
            "-k", str(tmp_path / "absent.txt"),
        ],
    )
    assert result.exit_code == 1
    assert "not found" in result.output.lower()


def test_cli_lmm_invalid_mode(tmp_path: Path, plink_study):
    result = runner.invoke(
        app,
        [
            "-outdir", str(tmp_path / "output"),
            "lmm",
            "-bfile", str(plink_study["bfile"]),
            "-k", str(plink_study["kinship"]),
            "-lmm", "7",
        ],
    )
    assert result.exit_code == 1
    assert "lmm_mode" in result.output


def test_cli_lmm_invalid_bfile(tmp_path: Path):
    """Test that lmm fails gracefully with nonexistent bfile."""
    result = runner.invoke(
        app,
        [
            "-outdir", str(tmp_path / "output"),
            "lmm",
            "-bfile", str(tmp_path / "nonexistent"),
            "-k", str(tmp_path / "k.txt"),
        ],
    )
    assert result.exit_code == 1
    assert "not found" in result.output.lower() or "error" in result.output.lower()
