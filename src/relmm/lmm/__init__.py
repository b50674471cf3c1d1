"""Linear Mixed Model (LMM) association testing.

The core algorithm follows Zhou & Stephens (2012) Nature Genetics.

Key components:
- eigendecompose_kinship: Kinship eigendecomposition with small-eigenvalue zeroing
- project_null_data: Rotation of phenotype and covariates into the eigenspace
- estimate_lambda: Grid + Newton-Raphson variance-ratio estimation
- fit_null_model: Null model variance components
- MarkerTester: Wald / LRT / Score tests for a single marker
- scan_markers, run_association: Ordered concurrent scans
"""

from relmm.lmm.eigen import KinshipEigensystem, eigendecompose_kinship
from relmm.lmm.io import IncrementalAssocWriter, ListSink
from relmm.lmm.null_model import NullModel, fit_null_model
from relmm.lmm.optimize import LambdaEstimate, OptimizerStatus, estimate_lambda
from relmm.lmm.project import EigenProjector, RotatedNullData, project_null_data
from relmm.lmm.runner import (
    AssociationSink,
    RunSummary,
    ScanCounts,
    run_association,
    scan_markers,
)
from relmm.lmm.stats import AssocResult, SkipNotice
from relmm.lmm.tester import MarkerTester

__all__ = [
    "AssocResult",
    "AssociationSink",
    "EigenProjector",
    "IncrementalAssocWriter",
    "KinshipEigensystem",
    "LambdaEstimate",
    "ListSink",
    "MarkerTester",
    "NullModel",
    "OptimizerStatus",
    "RotatedNullData",
    "RunSummary",
    "ScanCounts",
    "SkipNotice",
    "eigendecompose_kinship",
    "estimate_lambda",
    "fit_null_model",
    "project_null_data",
    "run_association",
    "scan_markers",
]
