"""
Peak Enrichment
===============

Gene set enrichment testing for ChIP-seq peaks, with length and mappability
correction and hybrid combination of two tests.
"""

from .pipeline import (
    EnrichmentPipeline as EnrichmentPipeline,
    HybridRun as HybridRun,
    run_enrichment as run_enrichment,
    hybridenrich as hybridenrich,
)
from .config import (
    PipelineConfig as PipelineConfig,
    EnrichmentOptions as EnrichmentOptions,
    LocusDefinition as LocusDefinition,
    Method as Method,
    Weighting as Weighting,
    Randomization as Randomization,
    MappabilitySpec as MappabilitySpec,
)
from .data import (
    GeneAnnotation as GeneAnnotation,
    GenesetDatabase as GenesetDatabase,
    load_peaks as load_peaks,
    load_gene_annotation as load_gene_annotation,
    load_genesets as load_genesets,
    load_locusdef as load_locusdef,
    load_mappability as load_mappability,
)
from .locus import PeakAssigner as PeakAssigner, PeakAssignment as PeakAssignment
from .covariates import build_design as build_design, randomize_design as randomize_design
from .enrichment import (
    EnrichmentEngine as EnrichmentEngine,
    EnrichmentRun as EnrichmentRun,
    FitFailure as FitFailure,
)
from .dispatch import dispatch as dispatch
from .hybrid import HybridResult as HybridResult, hybrid_join as hybrid_join
from .output import ResultWriter as ResultWriter
from .exceptions import (
    EnrichmentError as EnrichmentError,
    InvalidInputError as InvalidInputError,
    PreconditionViolationError as PreconditionViolationError,
    NoCommonGenesetsError as NoCommonGenesetsError,
    MissingResultsColumnError as MissingResultsColumnError,
    ModelFitError as ModelFitError,
    DispatchError as DispatchError,
)
from .utils import setup_logging as setup_logging, ensure_dir as ensure_dir

__version__ = "0.1.0"

__all__ = [
    "EnrichmentPipeline",
    "HybridRun",
    "run_enrichment",
    "hybridenrich",
    "PipelineConfig",
    "EnrichmentOptions",
    "LocusDefinition",
    "Method",
    "Weighting",
    "Randomization",
    "MappabilitySpec",
    "GeneAnnotation",
    "GenesetDatabase",
    "load_peaks",
    "load_gene_annotation",
    "load_genesets",
    "load_locusdef",
    "load_mappability",
    "PeakAssigner",
    "PeakAssignment",
    "build_design",
    "randomize_design",
    "EnrichmentEngine",
    "EnrichmentRun",
    "FitFailure",
    "dispatch",
    "HybridResult",
    "hybrid_join",
    "ResultWriter",
    "EnrichmentError",
    "InvalidInputError",
    "PreconditionViolationError",
    "NoCommonGenesetsError",
    "MissingResultsColumnError",
    "ModelFitError",
    "DispatchError",
    "setup_logging",
    "ensure_dir",
]
