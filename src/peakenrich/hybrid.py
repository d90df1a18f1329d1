"""
Combination of two enrichment results into a hybrid p-value.

For every gene set present in both inputs the hybrid p-value is
``2 * min(p_x, p_y)``, with Benjamini-Hochberg FDR across the common gene sets.
The hybrid p-value is deliberately not clamped at 1.
"""

from dataclasses import dataclass
from typing import Union
import logging

import polars as pl

from .enrichment import EnrichmentRun
from .exceptions import MissingResultsColumnError, NoCommonGenesetsError
from .stats import fdr_bh

logger = logging.getLogger(__name__)

ResultsInput = Union[pl.DataFrame, EnrichmentRun]


@dataclass
class HybridResult:
    """Joined results with hybrid p-values; ``n_common`` is the number of shared gene sets."""

    results: pl.DataFrame
    n_common: int


def resolve_results(value: ResultsInput, label: str) -> pl.DataFrame:
    """
    Turn a result table or an enrichment run into a validated result table.

    Args:
        value: Result table, or an EnrichmentRun whose ``results`` is used
        label: Name of the input in error messages ('first' or 'second')

    Returns:
        The result table
    """
    if isinstance(value, EnrichmentRun):
        table = value.results
    elif isinstance(value, pl.DataFrame):
        table = value
    else:
        raise MissingResultsColumnError(
            label,
            'results',
            f"{label.capitalize()} object is neither a result table nor an enrichment run "
            f"(got {type(value).__name__})",
        )

    for column in ('Geneset.ID', 'P.value'):
        if column not in table.columns:
            raise MissingResultsColumnError(label, column)
    return table


def hybrid_join(first: ResultsInput, second: ResultsInput) -> HybridResult:
    """
    Join two result sets on Geneset.ID and compute hybrid p-values.

    Status columns are combined only when both inputs have one: equal
    statuses pass through, different statuses become "Inconsistent".

    Output columns: the first table's columns other than P.value (and Status,
    when both inputs have one) in their original order, then P.value.x,
    P.value.y, [Status.x, Status.y], P.value.Hybrid, FDR.Hybrid,
    [Status.Hybrid]. Rows are sorted by Geneset.ID.

    Args:
        first: First result set
        second: Second result set

    Returns:
        HybridResult
    """
    results1 = resolve_results(first, 'first')
    results2 = resolve_results(second, 'second')
    has_status = 'Status' in results1.columns and 'Status' in results2.columns

    def _pvals(table: pl.DataFrame, suffix: str) -> pl.DataFrame:
        columns = [
            pl.col('Geneset.ID').cast(pl.Utf8),
            pl.col('P.value').cast(pl.Float64).alias(f'P.value.{suffix}'),
        ]
        if has_status:
            columns.append(pl.col('Status').cast(pl.Utf8).alias(f'Status.{suffix}'))
        return table.select(columns)

    pvals = _pvals(results1, 'x').join(_pvals(results2, 'y'), on='Geneset.ID', how='inner')
    if pvals.height == 0:
        raise NoCommonGenesetsError("No common genesets in the two datasets")
    logger.info(f"Total of {pvals.height} common Geneset.IDs")

    p_x, p_y = pl.col('P.value.x'), pl.col('P.value.y')
    pvals = pvals.with_columns(
        pl.when(p_x.is_not_null() & p_y.is_not_null())
        .then(2 * pl.min_horizontal(p_x, p_y))
        .otherwise(None)
        .alias('P.value.Hybrid')
    )
    pvals = pvals.with_columns(
        pl.Series('FDR.Hybrid', fdr_bh(pvals['P.value.Hybrid'].to_numpy())).fill_nan(None)
    )

    hybrid_columns = ['P.value.x', 'P.value.y']
    if has_status:
        s_x, s_y = pl.col('Status.x'), pl.col('Status.y')
        pvals = pvals.with_columns(
            pl.when(s_x.is_null() | s_y.is_null())
            .then(None)
            .when(s_x == s_y)
            .then(s_x)
            .otherwise(pl.lit('Inconsistent'))
            .alias('Status.Hybrid')
        )
        hybrid_columns += ['Status.x', 'Status.y', 'P.value.Hybrid', 'FDR.Hybrid', 'Status.Hybrid']
    else:
        hybrid_columns += ['P.value.Hybrid', 'FDR.Hybrid']

    superseded = ['P.value', 'Status'] if has_status else ['P.value']
    rest = results1.drop(superseded).with_columns(pl.col('Geneset.ID').cast(pl.Utf8))

    joined = rest.join(pvals, on='Geneset.ID', how='inner')
    joined = joined.select(rest.columns + hybrid_columns).sort('Geneset.ID')
    return HybridResult(results=joined, n_common=pvals.height)
