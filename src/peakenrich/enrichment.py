"""
Per-gene-set enrichment testing over a design table.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union
import logging

import numpy as np
import polars as pl

from .config import Method
from .data import GenesetDatabase
from .dispatch import dispatch
from .exceptions import PreconditionViolationError
from .stats import (
    FitResult,
    NullModel,
    binomial_wald,
    estimate_nb_alpha,
    fdr_bh,
    fisher_test,
    fit_null_binomial,
    fit_null_nb,
    nb_wald,
    nuisance_matrix,
    score_test,
)

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    'Geneset.Type',
    'Geneset.ID',
    'Description',
    'P.value',
    'FDR',
    'Effect',
    'Status',
    'N.Geneset.Genes',
    'N.Geneset.Peak.Genes',
    'Geneset.Avg.Gene.Length',
    'Geneset.Peak.Genes',
]

RESULT_SCHEMA = {
    'Geneset.Type': pl.Utf8,
    'Geneset.ID': pl.Utf8,
    'Description': pl.Utf8,
    'P.value': pl.Float64,
    'FDR': pl.Float64,
    'Effect': pl.Float64,
    'Status': pl.Utf8,
    'N.Geneset.Genes': pl.Int64,
    'N.Geneset.Peak.Genes': pl.Int64,
    'Geneset.Avg.Gene.Length': pl.Float64,
    'Geneset.Peak.Genes': pl.Utf8,
}


@dataclass
class FitFailure:
    """A gene set whose model could not be fitted."""

    geneset_type: str
    geneset_id: str
    reason: str


@dataclass
class EnrichmentRun:
    """Outcome of testing every gene set with one method."""

    results: pl.DataFrame
    method: str
    n_tested: int
    skipped: Dict[str, List[str]] = field(default_factory=dict)
    failures: List[FitFailure] = field(default_factory=list)
    dropped_chromosomes: List[str] = field(default_factory=list)

    @property
    def n_skipped(self) -> int:
        return sum(len(ids) for ids in self.skipped.values())


@dataclass
class _TestContext:
    """Read-only arrays shared by every gene set task."""

    method: Method
    gene_ids: np.ndarray
    response: np.ndarray
    peak: np.ndarray
    length: np.ndarray
    Z: np.ndarray
    alpha: Optional[float] = None
    null: Optional[NullModel] = None


def _fit(context: _TestContext, member_idx: np.ndarray) -> FitResult:
    method = context.method
    if method in (Method.CHIPAPPROX, Method.POLYAPPROX):
        return score_test(context.null, member_idx)

    member = np.zeros(context.gene_ids.shape[0])
    member[member_idx] = 1.0
    if method == Method.CHIPENRICH:
        return binomial_wald(context.response, member, context.Z)
    if method == Method.POLYENRICH:
        return nb_wald(context.response, member, context.Z, context.alpha)
    return fisher_test(context.peak, member)


# Shared by every task in a worker process, set once by _init_worker
_worker_context: Optional[_TestContext] = None


def _init_worker(context: _TestContext) -> None:
    global _worker_context
    _worker_context = context


def _test_geneset(member_idx: np.ndarray) -> Union[dict, str]:
    """
    Test one gene set against the worker's shared context.

    Returns a partial result row, or the failure reason as a string.
    """
    context = _worker_context
    try:
        fit = _fit(context, member_idx)
    except Exception as e:
        return f"{type(e).__name__}: {e}"

    has_peak = context.peak[member_idx] > 0
    return {
        'P.value': fit.p_value,
        'Effect': fit.effect,
        'Status': 'enriched' if fit.effect > 0 else 'depleted',
        'N.Geneset.Genes': int(member_idx.shape[0]),
        'N.Geneset.Peak.Genes': int(has_peak.sum()),
        'Geneset.Avg.Gene.Length': float(context.length[member_idx].mean()),
        'Geneset.Peak.Genes': ', '.join(sorted(context.gene_ids[member_idx][has_peak].tolist())),
    }


def check_distinct_genesets(databases: Sequence[GenesetDatabase]) -> None:
    """Reject gene set ids that occur in more than one database."""
    owners: Dict[str, str] = {}
    shared = []
    for db in databases:
        for geneset_id in db.genesets:
            if geneset_id in owners and owners[geneset_id] != db.name:
                shared.append(f"{geneset_id} ({owners[geneset_id]}, {db.name})")
            else:
                owners[geneset_id] = db.name
    if shared:
        preview = ', '.join(shared[:5]) + (', ...' if len(shared) > 5 else '')
        raise PreconditionViolationError(
            f"{len(shared)} gene set ids occur in more than one database: {preview}"
        )


class EnrichmentEngine:
    """Fits one method's test to every gene set of one or more databases."""

    def __init__(
        self,
        design: pl.DataFrame,
        method: Method = Method.CHIPENRICH,
        min_geneset_size: int = 15,
        max_geneset_size: int = 2000,
        weighted: bool = False,
        spline_df: int = 5,
        n_cores: int = 1
    ):
        """
        Args:
            design: Design table from ``covariates.build_design``
            method: Test to run
            min_geneset_size: Smallest gene set tested, counted over genes in the design
            max_geneset_size: Largest gene set tested
            weighted: Use weighted_peaks as the response of count tests
            spline_df: Degrees of freedom of the length spline
            n_cores: Worker processes for the per-gene-set fits
        """
        self.design = design
        self.method = Method(method)
        self.min_geneset_size = min_geneset_size
        self.max_geneset_size = max_geneset_size
        self.weighted = weighted and self.method.is_count
        self.spline_df = spline_df
        self.n_cores = n_cores
        self.logger = logging.getLogger(__name__)

        if self.weighted and 'weighted_peaks' not in design.columns:
            raise PreconditionViolationError("Weighted test requested but the design has no weighted_peaks column")

        self._row = dict(zip(design['gene_id'].to_list(), range(design.height)))

    @property
    def method_name(self) -> str:
        return f"{self.method.value}_weighted" if self.weighted else self.method.value

    def _context(self) -> _TestContext:
        """Build the shared arrays and fit anything that is shared by all gene sets."""
        design = self.design
        if self.method.is_count:
            column = 'weighted_peaks' if self.weighted else 'num_peaks'
        else:
            column = 'peak'
        response = design[column].cast(pl.Float64).to_numpy()

        context = _TestContext(
            method=self.method,
            gene_ids=design['gene_id'].to_numpy(),
            response=response,
            peak=design['peak'].to_numpy(),
            length=design['length'].cast(pl.Float64).to_numpy(),
            Z=nuisance_matrix(design['log10_length'].to_numpy(), df=self.spline_df),
        )

        if self.method in (Method.POLYENRICH, Method.POLYAPPROX):
            context.alpha = estimate_nb_alpha(response, context.Z)
            self.logger.info(f"Negative binomial dispersion estimate: {context.alpha:.4g}")
        if self.method == Method.CHIPAPPROX:
            context.null = fit_null_binomial(response, context.Z)
        elif self.method == Method.POLYAPPROX:
            context.null = fit_null_nb(response, context.Z, context.alpha)
        return context

    def test(self, databases: Sequence[GenesetDatabase]) -> EnrichmentRun:
        """
        Test every gene set in the given databases.

        Gene sets whose size within the design falls outside the configured
        bounds are skipped. Gene sets whose fit fails are left out of the
        results and recorded on the run. FDR is computed within each database.
        Gene set ids must be distinct across databases.

        Args:
            databases: Gene set databases to test

        Returns:
            EnrichmentRun

        Raises:
            PreconditionViolationError: If a gene set id occurs in two databases
        """
        check_distinct_genesets(databases)
        if self.design.filter(pl.col('peak') > 0).height == 0:
            self.logger.warning("No genes have peaks; every test will be uninformative")

        tasks = {}
        skipped: Dict[str, List[str]] = {}
        for db in databases:
            skipped[db.name] = []
            for geneset_id, genes in db:
                member_idx = np.array(sorted(self._row[g] for g in genes if g in self._row), dtype=np.int64)
                if not self.min_geneset_size <= member_idx.shape[0] <= self.max_geneset_size:
                    skipped[db.name].append(geneset_id)
                    continue
                tasks[(db.name, geneset_id)] = member_idx

        n_skipped = sum(len(ids) for ids in skipped.values())
        self.logger.info(
            f"Testing {len(tasks)} gene sets with {self.method_name} "
            f"({n_skipped} skipped outside size bounds [{self.min_geneset_size}, {self.max_geneset_size}])"
        )

        context = self._context() if tasks else None
        try:
            outcomes = dispatch(
                _test_geneset,
                tasks,
                n_workers=self.n_cores,
                desc=f"Testing gene sets ({self.method_name})",
                initializer=_init_worker,
                initargs=(context,),
            )
        finally:
            _init_worker(None)

        failures = []
        tables = []
        descriptions = {db.name: db for db in databases}
        for db in databases:
            rows = []
            for (db_name, geneset_id), outcome in outcomes.items():
                if db_name != db.name:
                    continue
                if isinstance(outcome, str):
                    failures.append(FitFailure(db_name, geneset_id, outcome))
                    self.logger.debug(f"Fit failed for {db_name}:{geneset_id}: {outcome}")
                    continue
                rows.append({
                    'Geneset.Type': db_name,
                    'Geneset.ID': geneset_id,
                    'Description': descriptions[db_name].description(geneset_id),
                    'FDR': None,
                    **outcome,
                })
            if not rows:
                continue
            table = pl.DataFrame(rows, schema=RESULT_SCHEMA)
            tables.append(table.with_columns(pl.Series('FDR', fdr_bh(table['P.value'].to_numpy()))))

        if failures:
            self.logger.warning(f"{len(failures)} gene set fits failed and were excluded from the results")

        if tables:
            results = pl.concat(tables).sort(['P.value', 'Geneset.ID'])
        else:
            results = pl.DataFrame(schema=RESULT_SCHEMA)

        return EnrichmentRun(
            results=results.select(RESULT_COLUMNS),
            method=self.method_name,
            n_tested=results.height,
            skipped=skipped,
            failures=failures,
        )
