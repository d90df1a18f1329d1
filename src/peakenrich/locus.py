"""
Assignment of peaks to genes under a locus definition.

Peaks are reduced to their midpoints and queried, chromosome by chromosome,
against gene intervals sorted by start. The inner loops are Numba kernels doing
binary search over the sorted boundaries, so a chromosome with P peaks and G
genes costs O((P + G) log G) plus the size of the output.

Tie-break for the nearest-gene style definitions: when two genes are equally
close, the peak goes to the gene whose gene_id sorts first as a string.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple, Union
import logging

import numba as nb
import numpy as np
import polars as pl

from .config import LocusDefinition
from .data import GeneAnnotation, load_locusdef, validate_locusdef, validate_peaks
from .exceptions import PreconditionViolationError

logger = logging.getLogger(__name__)


@nb.njit
def _bisect_right(values, x):
    """Index of the first element of sorted ``values`` greater than ``x``."""
    lo = 0
    hi = values.shape[0]
    while lo < hi:
        mid = (lo + hi) // 2
        if values[mid] <= x:
            lo = mid + 1
        else:
            hi = mid
    return lo


@nb.njit
def _prefix_best_end(ends, ranks):
    """
    For each prefix of the start-sorted intervals, the index with the largest end.

    Equal ends resolve to the lower rank.
    """
    n = ends.shape[0]
    best = np.empty(n, dtype=np.int64)
    cur = -1
    for i in range(n):
        if cur < 0 or ends[i] > ends[cur] or (ends[i] == ends[cur] and ranks[i] < ranks[cur]):
            cur = i
        best[i] = cur
    return best


@nb.njit
def _is_better(d, rank, best_d, best_rank):
    return best_rank < 0 or d < best_d or (d == best_d and rank < best_rank)


@nb.njit
def _nearest_intervals(starts, ends, ranks, prefix_best, max_len, points):
    """
    Find the nearest interval to each point.

    Args:
        starts: Interval starts, sorted ascending (ties by rank)
        ends: Interval ends, same order
        ranks: Tie-break rank of each interval
        prefix_best: Output of ``_prefix_best_end``
        max_len: Largest ``end - start`` over all intervals
        points: Query coordinates

    Returns:
        Tuple of (interval index, distance) arrays; distance is 0 inside an interval
    """
    n_points = points.shape[0]
    n = starts.shape[0]
    hits = np.full(n_points, -1, dtype=np.int64)
    dists = np.zeros(n_points, dtype=np.int64)

    for i in range(n_points):
        x = points[i]
        best = -1
        best_d = 0
        best_rank = -1
        pos = _bisect_right(starts, x)

        # Intervals starting close enough on the left may contain x
        j = pos - 1
        while j >= 0 and starts[j] >= x - max_len:
            d = x - ends[j]
            if d < 0:
                d = 0
            if _is_better(d, ranks[j], best_d, best_rank):
                best, best_d, best_rank = j, d, ranks[j]
            j -= 1

        # Everything further left ends before x; the furthest-reaching one is nearest
        if j >= 0:
            k = prefix_best[j]
            d = x - ends[k]
            if _is_better(d, ranks[k], best_d, best_rank):
                best, best_d, best_rank = k, d, ranks[k]

        # First interval starting to the right (lowest rank among equal starts)
        if pos < n:
            d = starts[pos] - x
            if _is_better(d, ranks[pos], best_d, best_rank):
                best, best_d, best_rank = pos, d, ranks[pos]

        hits[i] = best
        dists[i] = best_d

    return hits, dists


@nb.njit
def _window_hits(starts, ends, max_len, points):
    """
    All (point, window) pairs where the point falls inside the window.

    Two passes: count the hits per point, then fill preallocated arrays.
    """
    n_points = points.shape[0]
    counts = np.zeros(n_points, dtype=np.int64)
    for i in range(n_points):
        x = points[i]
        j = _bisect_right(starts, x) - 1
        while j >= 0 and starts[j] >= x - max_len:
            if ends[j] >= x:
                counts[i] += 1
            j -= 1

    total = 0
    for i in range(n_points):
        total += counts[i]
    point_idx = np.empty(total, dtype=np.int64)
    window_idx = np.empty(total, dtype=np.int64)

    k = 0
    for i in range(n_points):
        if counts[i] == 0:
            continue
        x = points[i]
        j = _bisect_right(starts, x) - 1
        while j >= 0 and starts[j] >= x - max_len:
            if ends[j] >= x:
                point_idx[k] = i
                window_idx[k] = j
                k += 1
            j -= 1

    return point_idx, window_idx


@dataclass
class PeakAssignment:
    """Peaks assigned to genes under one locus definition.

    ``peaks`` has one row per (peak, gene) pair with columns peak_id, chrom,
    peak_start, peak_end, peak_midpoint, signal, gene_id and dist_to_tss
    (strand-aware; negative means upstream of the TSS).
    """

    peaks: pl.DataFrame
    locusdef: str
    n_peaks: int
    dropped_chromosomes: List[str] = field(default_factory=list)
    n_dropped: int = 0

    @property
    def n_assigned_peaks(self) -> int:
        return self.peaks['peak_id'].n_unique()


LocusInput = Union[LocusDefinition, Path, str, pl.DataFrame]


class PeakAssigner:
    """Maps peaks to genes for one annotation and locus definition."""

    def __init__(self, annotation: GeneAnnotation, locusdef: LocusInput = LocusDefinition.NEAREST_TSS):
        self.annotation = annotation
        self.logger = logging.getLogger(__name__)

        if isinstance(locusdef, pl.DataFrame):
            self.locusdef = validate_locusdef(locusdef)
            self.locusdef_name = 'custom'
        elif isinstance(locusdef, LocusDefinition):
            self.locusdef = locusdef
            self.locusdef_name = locusdef.value
        else:
            try:
                self.locusdef = LocusDefinition(locusdef)
                self.locusdef_name = self.locusdef.value
            except ValueError:
                self.locusdef = load_locusdef(locusdef)
                self.locusdef_name = Path(locusdef).stem

        genes = annotation.genes
        # gene_id order doubles as the tie-break rank
        self._rank = dict(zip(genes['gene_id'].to_list(), range(genes.height)))
        self._windows = None if self._is_nearest else self._build_windows()

    @property
    def _is_nearest(self) -> bool:
        return isinstance(self.locusdef, LocusDefinition) and self.locusdef.is_nearest

    def _build_windows(self) -> pl.DataFrame:
        """Windows (chrom, start, end, gene_id, rank) for the window-style definitions."""
        genes = self.annotation.genes
        locusdef = self.locusdef

        if isinstance(locusdef, pl.DataFrame):
            known = locusdef.filter(pl.col('gene_id').is_in(genes['gene_id'].to_list()))
            n_unknown = locusdef.height - known.height
            if n_unknown:
                self.logger.warning(
                    f"Dropped {n_unknown} custom locus definition rows for genes not in the annotation"
                )
            windows = known
        elif locusdef == LocusDefinition.EXON:
            windows = self._require_exons()
        elif locusdef == LocusDefinition.INTRON:
            windows = _intron_windows(genes, self._require_exons())
        else:
            half = locusdef.window
            windows = genes.select(
                'chrom',
                (pl.col('tss') - half).clip(lower_bound=0).alias('start'),
                (pl.col('tss') + half).alias('end'),
                'gene_id',
            )

        return windows.with_columns(
            pl.col('gene_id').replace_strict(self._rank, return_dtype=pl.Int64).alias('rank')
        )

    def _require_exons(self) -> pl.DataFrame:
        exons = self.annotation.exons
        if exons is None:
            raise PreconditionViolationError(
                f"Locus definition '{self.locusdef_name}' needs an exon table in the gene annotation"
            )
        return exons.filter(pl.col('gene_id').is_in(self.annotation.gene_ids))

    def assign(self, peaks: pl.DataFrame) -> PeakAssignment:
        """
        Assign peaks to genes.

        The result depends only on the peaks, the annotation and the locus
        definition, never on the order of the input rows.

        Args:
            peaks: DataFrame with chrom, start, end and optional signal columns

        Returns:
            PeakAssignment
        """
        peaks = (
            validate_peaks(peaks)
            .sort(['chrom', 'start', 'end', 'signal'], nulls_last=True)
            .with_row_index('peak_index', offset=1)
            .with_columns(
                ('peak_' + pl.col('peak_index').cast(pl.Utf8)).alias('peak_id'),
                ((pl.col('start') + pl.col('end')) // 2).alias('peak_midpoint'),
            )
        )
        n_peaks = peaks.height

        known_chroms = set(self.annotation.chromosomes)
        peak_chroms = set(peaks['chrom'].unique().to_list())
        dropped = sorted(peak_chroms - known_chroms)
        n_dropped = 0
        if dropped:
            n_dropped = peaks.filter(pl.col('chrom').is_in(dropped)).height
            self.logger.warning(
                f"Dropped {n_dropped} peaks on chromosomes absent from the annotation: {', '.join(dropped)}"
            )

        pairs = []
        for chrom in sorted(peak_chroms & known_chroms):
            chrom_peaks = peaks.filter(pl.col('chrom') == chrom)
            mids = chrom_peaks['peak_midpoint'].to_numpy().astype(np.int64)
            peak_rows, gene_ids = (
                self._assign_nearest(chrom, mids) if self._is_nearest else self._assign_windows(chrom, mids)
            )
            if len(peak_rows) == 0:
                continue
            pairs.append(
                chrom_peaks[peak_rows].select('peak_index').with_columns(
                    pl.Series('gene_id', gene_ids, dtype=pl.Utf8)
                )
            )

        assigned = self._finalise(peaks, pairs)
        self.logger.info(
            f"Assigned {assigned['peak_id'].n_unique()} of {n_peaks} peaks to "
            f"{assigned['gene_id'].n_unique()} genes using locus definition '{self.locusdef_name}'"
        )
        return PeakAssignment(
            peaks=assigned,
            locusdef=self.locusdef_name,
            n_peaks=n_peaks,
            dropped_chromosomes=dropped,
            n_dropped=n_dropped,
        )

    def _assign_nearest(self, chrom: str, mids: np.ndarray) -> Tuple[np.ndarray, List[str]]:
        genes = self.annotation.genes.filter(pl.col('chrom') == chrom)
        if self.locusdef == LocusDefinition.NEAREST_GENE:
            starts = genes['start'].to_numpy().astype(np.int64)
            ends = genes['end'].to_numpy().astype(np.int64)
        else:
            starts = genes['tss'].to_numpy().astype(np.int64)
            ends = starts.copy()
        ranks = np.array([self._rank[g] for g in genes['gene_id'].to_list()], dtype=np.int64)

        order = np.lexsort((ranks, starts))
        starts, ends, ranks = starts[order], ends[order], ranks[order]
        max_len = int((ends - starts).max())
        hits, _ = _nearest_intervals(starts, ends, ranks, _prefix_best_end(ends, ranks), max_len, mids)

        gene_ids = genes['gene_id'].to_numpy()[order[hits]]
        keep = np.ones(len(mids), dtype=bool)

        if 'outside' in self.locusdef.value:
            tss = genes['tss'].to_numpy().astype(np.int64)[order[hits]]
            sign = np.where(genes['strand'].to_numpy()[order[hits]] == '+', 1, -1)
            offset = (mids - tss) * sign
            half = self.locusdef.window
            if self.locusdef.value.endswith('upstream'):
                keep = offset < -half
            else:
                keep = np.abs(offset) > half

        return np.flatnonzero(keep), gene_ids[keep].tolist()

    def _assign_windows(self, chrom: str, mids: np.ndarray) -> Tuple[np.ndarray, List[str]]:
        windows = self._windows.filter(pl.col('chrom') == chrom).sort(['start', 'rank'])
        if windows.height == 0:
            return np.empty(0, dtype=np.int64), []

        starts = windows['start'].to_numpy().astype(np.int64)
        ends = windows['end'].to_numpy().astype(np.int64)
        max_len = int((ends - starts).max())
        point_idx, window_idx = _window_hits(starts, ends, max_len, mids)
        return point_idx, windows['gene_id'].to_numpy()[window_idx].tolist()

    def _finalise(self, peaks: pl.DataFrame, pairs: List[pl.DataFrame]) -> pl.DataFrame:
        if pairs:
            pairs_df = pl.concat(pairs)
        else:
            pairs_df = pl.DataFrame(schema={'peak_index': pl.UInt32, 'gene_id': pl.Utf8})

        genes = self.annotation.genes.select('gene_id', 'tss', 'strand')
        return (
            pairs_df.unique()
            .join(peaks, on='peak_index', how='inner')
            .join(genes, on='gene_id', how='left')
            .with_columns(
                pl.when(pl.col('strand') == '+')
                .then(pl.col('peak_midpoint') - pl.col('tss'))
                .otherwise(pl.col('tss') - pl.col('peak_midpoint'))
                .alias('dist_to_tss')
            )
            .sort(['peak_index', 'gene_id'])
            .select(
                'peak_id',
                'chrom',
                pl.col('start').alias('peak_start'),
                pl.col('end').alias('peak_end'),
                'peak_midpoint',
                'signal',
                'gene_id',
                'dist_to_tss',
            )
        )


def _intron_windows(genes: pl.DataFrame, exons: pl.DataFrame) -> pl.DataFrame:
    """Gene body minus the union of that gene's exons."""
    grouped = (
        exons.sort(['gene_id', 'start'])
        .group_by('gene_id', maintain_order=True)
        .agg(pl.col('start').alias('exon_starts'), pl.col('end').alias('exon_ends'))
        .join(genes.select('gene_id', 'chrom', 'start', 'end'), on='gene_id', how='inner')
    )

    rows = {'chrom': [], 'start': [], 'end': [], 'gene_id': []}
    for row in grouped.iter_rows(named=True):
        cursor = row['start']
        for exon_start, exon_end in zip(row['exon_starts'], row['exon_ends']):
            if exon_start > cursor:
                rows['chrom'].append(row['chrom'])
                rows['start'].append(cursor)
                rows['end'].append(min(exon_start - 1, row['end']))
                rows['gene_id'].append(row['gene_id'])
            cursor = max(cursor, exon_end + 1)
            if cursor > row['end']:
                break
        if cursor <= row['end']:
            rows['chrom'].append(row['chrom'])
            rows['start'].append(cursor)
            rows['end'].append(row['end'])
            rows['gene_id'].append(row['gene_id'])

    return pl.DataFrame(
        rows, schema={'chrom': pl.Utf8, 'start': pl.Int64, 'end': pl.Int64, 'gene_id': pl.Utf8}
    ).filter(pl.col('end') >= pl.col('start'))
