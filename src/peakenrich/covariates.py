"""
Per-gene covariates: the design table every enrichment test is fitted on.
"""

from typing import Optional, Sequence
import logging

import numpy as np
import polars as pl

from .config import MappabilitySpec, Randomization, Weighting
from .data import GeneAnnotation, load_mappability, validate_mappability
from .exceptions import InvalidInputError, PreconditionViolationError
from .locus import PeakAssignment

logger = logging.getLogger(__name__)

# Columns that describe peaks rather than the gene itself; randomisation moves these together
PEAK_COLUMNS = ('num_peaks', 'peak_width', 'peak', 'weighted_peaks')


def resolve_mappability(annotation: GeneAnnotation, mappability: MappabilitySpec) -> pl.DataFrame:
    """
    Mappability per annotation gene.

    Args:
        annotation: Gene annotation
        mappability: Which correction to apply

    Returns:
        DataFrame with gene_id and mappa columns; mappa is null where the source has no value
    """
    genes = annotation.genes.select('gene_id')
    if not mappability.enabled:
        return genes.with_columns(pl.lit(1.0).alias('mappa'))

    if mappability.read_length is not None:
        column = annotation.mappability_column(mappability.read_length)
        if column is None:
            raise PreconditionViolationError(
                f"Annotation for genome {annotation.genome} has no mappability for "
                f"read length {mappability.read_length}"
            )
        logger.debug(f"Using annotation column '{column}' for mappability")
        return annotation.genes.select('gene_id', pl.col(column).alias('mappa'))

    custom = mappability.custom
    if isinstance(custom, pl.DataFrame):
        table = validate_mappability(custom)
    else:
        table = load_mappability(custom)
    return genes.join(table, on='gene_id', how='left')


def _peak_weights(peaks: pl.DataFrame, weighting: Sequence[Weighting]) -> pl.Series:
    """Weight of each (peak, gene) row; multiple weightings multiply."""
    weight = pl.lit(1.0)
    per_peak = peaks.unique(subset='peak_id')

    if Weighting.SIGNAL_VALUE in weighting or Weighting.LOG_SIGNAL_VALUE in weighting:
        signal = per_peak['signal']
        if signal.null_count() > 0 or (signal <= 0).any():
            raise InvalidInputError("Signal weighting needs a positive signal value for every assigned peak")

    if Weighting.SIGNAL_VALUE in weighting:
        weight = weight * pl.col('signal') / per_peak['signal'].mean()

    if Weighting.LOG_SIGNAL_VALUE in weighting:
        if (per_peak['signal'] <= 1).any():
            raise InvalidInputError("logsignalValue weighting needs signal values greater than 1")
        mean_log = per_peak['signal'].log().mean()
        weight = weight * pl.col('signal').log() / mean_log

    if Weighting.MULTI_ASSIGN in weighting:
        weight = weight / pl.col('gene_id').count().over('peak_id')

    return peaks.select(weight.cast(pl.Float64).alias('weight'))['weight']


def build_design(
    assignment: PeakAssignment,
    annotation: GeneAnnotation,
    mappability: Optional[MappabilitySpec] = None,
    num_peak_threshold: int = 1,
    weighting: Sequence[Weighting] = ()
) -> pl.DataFrame:
    """
    Build the per-gene design table.

    Every annotation gene gets a row, including genes without peaks. Genes
    with no mappability value, or with no mappable length, are dropped.

    Args:
        assignment: Peak-to-gene assignment
        annotation: Gene annotation the assignment was made against
        mappability: Mappability correction (None for no correction)
        num_peak_threshold: Minimum peaks for a gene to count as having a peak
        weighting: Peak weightings for the weighted_peaks column

    Returns:
        DataFrame with gene_id, chrom, start, end, length, mappa, num_peaks,
        peak_width, peak, log10_length and, when weighting is given, weighted_peaks
    """
    mappability = mappability or MappabilitySpec()
    genes = annotation.genes.select('gene_id', 'chrom', 'start', 'end', 'length').join(
        resolve_mappability(annotation, mappability), on='gene_id', how='left'
    )

    usable = pl.col('mappa').is_not_null() & ((pl.col('length') * pl.col('mappa')) > 0)
    n_dropped = genes.filter(~usable).height
    if n_dropped:
        logger.warning(f"Dropped {n_dropped} genes with missing mappability or no mappable length")
    genes = genes.filter(usable)

    peaks = assignment.peaks
    aggs = [
        pl.len().cast(pl.Int64).alias('num_peaks'),
        (pl.col('peak_end') - pl.col('peak_start')).sum().cast(pl.Int64).alias('peak_width'),
    ]
    if weighting:
        peaks = peaks.with_columns(_peak_weights(peaks, weighting))
        aggs.append(pl.col('weight').sum().alias('weighted_peaks'))
    per_gene = peaks.group_by('gene_id').agg(aggs)

    fill = {'num_peaks': 0, 'peak_width': 0}
    if weighting:
        fill['weighted_peaks'] = 0.0
    design = genes.join(per_gene, on='gene_id', how='left').with_columns(
        [pl.col(col).fill_null(value) for col, value in fill.items()]
    )

    design = design.with_columns(
        (pl.col('num_peaks') >= num_peak_threshold).cast(pl.Int64).alias('peak'),
        (pl.col('length') * pl.col('mappa')).log10().alias('log10_length'),
    )

    columns = [
        'gene_id', 'chrom', 'start', 'end', 'length', 'mappa',
        'num_peaks', 'peak_width', 'peak', 'log10_length',
    ]
    if weighting:
        columns.append('weighted_peaks')

    logger.info(
        f"Design table: {design.height} genes, {design['peak'].sum()} with at least "
        f"{num_peak_threshold} peak(s)"
    )
    return design.select(columns).sort('gene_id')


def randomize_design(
    design: pl.DataFrame,
    mode: Randomization,
    seed: Optional[int] = None,
    bin_size: int = 50
) -> pl.DataFrame:
    """
    Permute the peak columns of a design table across genes.

    Used to check test calibration: with peaks shuffled, p-values should be
    uniform. The gene covariates stay in place.

    Args:
        design: Design table from ``build_design``
        mode: complete, bylength or bylocation
        seed: Seed for the random generator
        bin_size: Genes per bin for the stratified modes

    Returns:
        Design table with the same rows and shuffled peak columns
    """
    if bin_size < 2:
        raise PreconditionViolationError("Randomization bin size must be at least 2")

    rng = np.random.default_rng(seed)
    n = design.height
    indexed = design.with_row_index('_row')

    if mode == Randomization.COMPLETE:
        order = np.arange(n)
        bin_size = max(n, 1)
    elif mode == Randomization.BY_LENGTH:
        order = indexed.sort(['length', 'gene_id'])['_row'].to_numpy()
    elif mode == Randomization.BY_LOCATION:
        order = indexed.sort(['chrom', 'start', 'gene_id'])['_row'].to_numpy()
    else:
        raise PreconditionViolationError(f"Unsupported randomization: {mode!r}")

    source = np.arange(n)
    for offset in range(0, n, bin_size):
        block = order[offset:offset + bin_size]
        source[block] = block[rng.permutation(len(block))]

    logger.info(f"Randomized peak assignment ({Randomization(mode).value}, seed={seed})")
    columns = [col for col in PEAK_COLUMNS if col in design.columns]
    return design.with_columns([design[col].gather(source) for col in columns])
