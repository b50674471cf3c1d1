"""relmm command-line interface.

A Typer-based CLI following GEMMA's flags (-bfile, -k, -c, -lmm, -o,
-outdir) for linear mixed model association testing.
"""

import sys
from pathlib import Path
from typing import Annotated

import typer

import relmm
from relmm.core.config import OptimizerConfig, OutputConfig
from relmm.errors import RelmmError
from relmm.pipeline import PipelineConfig, PipelineRunner
from relmm.utils.logging import setup_logging, write_run_log

app = typer.Typer(
    name="relmm",
    help="relmm: linear mixed model association for genome-wide studies.",
    add_completion=False,
)

# Store global options set by callback
_global_config: OutputConfig | None = None


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        from relmm.core.jax_config import get_jax_info

        typer.echo(f"relmm version {relmm.__version__}")
        info = get_jax_info()
        typer.echo(f"JAX {info['version']} backend: {info['backend']}")
        raise typer.Exit()


@app.callback()
def main(
    outdir: Annotated[
        Path,
        typer.Option("-outdir", help="Output directory"),
    ] = Path("output"),
    output: Annotated[
        str,
        typer.Option("-o", help="Output file prefix"),
    ] = "result",
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Verbose output"),
    ] = False,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = None,
) -> None:
    """relmm: linear mixed model association."""
    global _global_config
    _global_config = OutputConfig(outdir=outdir, prefix=output, verbose=verbose)
    setup_logging(verbose=verbose)


@app.command("lmm")
def lmm_command(
    bfile: Annotated[
        Path,
        typer.Option("-bfile", help="PLINK binary file prefix"),
    ],
    kinship_file: Annotated[
        Path,
        typer.Option("-k", help="Kinship matrix file (GEMMA .cXX.txt format)"),
    ],
    covariate_file: Annotated[
        Path | None,
        typer.Option("-c", help="Covariate file (whitespace-delimited, no header)"),
    ] = None,
    lmm_mode: Annotated[
        int,
        typer.Option("-lmm", help="LMM analysis type (1=Wald, 2=LRT, 3=Score, 4=All)"),
    ] = 1,
    maf: Annotated[
        float,
        typer.Option("-maf", help="MAF threshold for marker filtering"),
    ] = 0.0,
    miss: Annotated[
        float,
        typer.Option("-miss", help="Missing rate threshold"),
    ] = 0.05,
    ml: Annotated[
        bool,
        typer.Option("--ml", help="Estimate lambda by ML instead of REML"),
    ] = False,
    fixed_lambda: Annotated[
        bool,
        typer.Option(
            "--fixed-lambda",
            help="Reuse the null-model lambda for every marker (EMMAX-style)",
        ),
    ] = False,
    workers: Annotated[
        int,
        typer.Option("--workers", help="Worker threads (0 = physical cores)"),
    ] = 1,
    lmin: Annotated[
        float,
        typer.Option("--lmin", help="Lower bound of the lambda search"),
    ] = 1e-5,
    lmax: Annotated[
        float,
        typer.Option("--lmax", help="Upper bound of the lambda search"),
    ] = 1e5,
    tol: Annotated[
        float,
        typer.Option("--tol", help="Newton-Raphson tolerance on the score"),
    ] = 1e-5,
    max_iter: Annotated[
        int,
        typer.Option("--max-iter", help="Maximum Newton-Raphson iterations"),
    ] = 100,
) -> None:
    """Perform linear mixed model association testing.

    Supports Wald test (-lmm 1), LRT (-lmm 2), Score test (-lmm 3),
    and all tests combined (-lmm 4).
    """
    global _global_config
    if _global_config is None:
        _global_config = OutputConfig()

    try:
        optimizer = OptimizerConfig(l_min=lmin, l_max=lmax, tol=tol, max_iter=max_iter)
        config = PipelineConfig(
            bfile=bfile,
            kinship_file=kinship_file,
            covariate_file=covariate_file,
            lmm_mode=lmm_mode,
            maf=maf,
            miss=miss,
            reml=not ml,
            reestimate_lambda=not fixed_lambda,
            optimizer=optimizer,
            n_workers=workers,
            output_dir=_global_config.outdir,
            output_prefix=_global_config.prefix,
        )
        result = PipelineRunner(config).run()
    except (RelmmError, ValueError, FileNotFoundError, MemoryError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from None

    summary = result.summary
    params = {
        "lmm_mode": lmm_mode,
        "method": "ML" if ml else "REML",
        "lambda": "null model" if fixed_lambda else "per marker",
        "n_workers": workers,
        "n_total_individuals": summary.n_samples_total,
        "n_analyzed_individuals": summary.n_samples,
        "n_covariates": summary.null_model.beta.shape[0],
    }
    write_run_log(
        _global_config, params, result.timing, " ".join(sys.argv), summary=summary
    )

    typer.echo(f"Association results written to {result.assoc_path}")


if __name__ == "__main__":
    app()
