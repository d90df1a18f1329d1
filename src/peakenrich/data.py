"""
Input tables for the peak enrichment pipeline: loading and validation.

Everything here is read once and treated as immutable afterwards.
"""

from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple, Union
import io
from pathlib import Path
import logging

import polars as pl

from .exceptions import InvalidInputError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Column name spellings accepted for the same field
_CHROM_ALIASES = ('chrom', 'chr', 'seqnames')
_GENE_ID_ALIASES = ('gene_id', 'geneid')
_SIGNAL_ALIASES = ('signal', 'signalValue', 'signal_value')


def _pick_column(df: pl.DataFrame, aliases, label: str, what: str) -> str:
    for name in aliases:
        if name in df.columns:
            return name
    raise InvalidInputError(
        f"{what} is missing required column '{label}' (accepted names: {', '.join(aliases)})"
    )


def _read_table(file_path: PathLike, what: str, **kwargs) -> pl.DataFrame:
    file_path = Path(file_path)
    if not file_path.is_file():
        raise InvalidInputError(f"{what} file not found: {file_path}")
    try:
        return pl.read_csv(file_path, separator='\t', **kwargs)
    except (pl.exceptions.PolarsError, OSError, UnicodeDecodeError) as e:
        raise InvalidInputError(f"Could not read {what} file {file_path}: {e}") from e


def _check_coordinates(df: pl.DataFrame, what: str) -> pl.DataFrame:
    """Cast start/end to integers and reject negative or inverted intervals."""
    try:
        df = df.with_columns(pl.col('start').cast(pl.Int64), pl.col('end').cast(pl.Int64))
    except pl.exceptions.PolarsError as e:
        raise InvalidInputError(f"{what} has non-integer coordinates: {e}") from e

    if df.select(pl.col('start').is_null().any() | pl.col('end').is_null().any()).item():
        raise InvalidInputError(f"{what} has missing coordinates")
    bad = df.filter((pl.col('start') < 0) | (pl.col('end') < pl.col('start')))
    if bad.height > 0:
        raise InvalidInputError(
            f"{what} has {bad.height} interval(s) with negative start or end before start"
        )
    return df


# Peaks

def validate_peaks(peaks: pl.DataFrame) -> pl.DataFrame:
    """
    Normalise an already-parsed peak table.

    Args:
        peaks: DataFrame with chromosome, start, end and optionally a signal column

    Returns:
        DataFrame with columns chrom, start, end, signal (signal may be null)
    """
    if peaks.height == 0:
        raise InvalidInputError("Peak table is empty")

    chrom_col = _pick_column(peaks, _CHROM_ALIASES, 'chrom', 'Peak table')
    if 'start' not in peaks.columns or 'end' not in peaks.columns:
        raise InvalidInputError("Peak table is missing required columns 'start' and/or 'end'")
    signal_col = next((name for name in _SIGNAL_ALIASES if name in peaks.columns), None)

    try:
        df = peaks.select(
            pl.col(chrom_col).cast(pl.Utf8).alias('chrom'),
            'start',
            'end',
            (pl.col(signal_col).cast(pl.Float64) if signal_col else pl.lit(None, dtype=pl.Float64)).alias('signal'),
        )
    except pl.exceptions.PolarsError as e:
        raise InvalidInputError(f"Peak table has a non-numeric signal column: {e}") from e

    return _check_coordinates(df, 'Peak table')


def load_peaks(file_path: PathLike) -> pl.DataFrame:
    """
    Load a BED-like peak file (no header; '#', 'track' and 'browser' lines skipped).

    Columns 1-3 are chromosome, start and end. When the file has at least seven
    columns (narrowPeak/broadPeak) the seventh is taken as the signal value.

    Args:
        file_path: Path to the peak file

    Returns:
        DataFrame with chrom, start, end and signal columns
    """
    file_path = Path(file_path)
    if not file_path.is_file():
        raise InvalidInputError(f"Peak file not found: {file_path}")
    try:
        with open(file_path) as f:
            lines = [line for line in f if line.strip() and not line.startswith(('#', 'track', 'browser'))]
    except (OSError, UnicodeDecodeError) as e:
        raise InvalidInputError(f"Could not read peak file {file_path}: {e}") from e
    if not lines:
        raise InvalidInputError(f"Peak file {file_path} has no peaks")

    try:
        raw = pl.read_csv(
            io.BytesIO(''.join(lines).encode()), separator='\t', has_header=False, infer_schema_length=0
        )
    except pl.exceptions.PolarsError as e:
        raise InvalidInputError(f"Could not parse peak file {file_path}: {e}") from e
    if raw.width < 3:
        raise InvalidInputError(f"Peak file {file_path} must have at least 3 tab-separated columns")

    columns = {
        raw.columns[0]: 'chrom',
        raw.columns[1]: 'start',
        raw.columns[2]: 'end',
    }
    if raw.width >= 7:
        columns[raw.columns[6]] = 'signal'
    df = raw.select(list(columns)).rename(columns)
    return validate_peaks(df)


# Gene annotation

class GeneAnnotation:
    """Gene coordinates, lengths and optional mappability for one genome."""

    def __init__(self, genes: pl.DataFrame, genome: str, exons: Optional[pl.DataFrame] = None):
        """Validate and store an annotation table.

        Args:
            genes: DataFrame with gene_id, chrom, start, end, strand and optionally
                   length, symbol and mappability columns (mappa or mappa_<read length>)
            genome: Genome build the annotation belongs to
            exons: Optional DataFrame with gene_id, chrom, start, end used by the
                   exon and intron locus definitions
        """
        self.genome = genome
        self.genes = self._validate_genes(genes)
        self.exons = self._validate_exons(exons) if exons is not None else None

    @staticmethod
    def _validate_genes(genes: pl.DataFrame) -> pl.DataFrame:
        if genes.height == 0:
            raise InvalidInputError("Gene annotation is empty")

        gene_col = _pick_column(genes, _GENE_ID_ALIASES, 'gene_id', 'Gene annotation')
        chrom_col = _pick_column(genes, _CHROM_ALIASES, 'chrom', 'Gene annotation')
        missing = [col for col in ('start', 'end', 'strand') if col not in genes.columns]
        if missing:
            raise InvalidInputError(f"Gene annotation is missing required columns: {', '.join(missing)}")

        renames = {old: new for old, new in ((gene_col, 'gene_id'), (chrom_col, 'chrom')) if old != new}
        df = genes.rename(renames)
        df = df.with_columns(
            pl.col('gene_id').cast(pl.Utf8),
            pl.col('chrom').cast(pl.Utf8),
            pl.col('strand').cast(pl.Utf8),
        )
        df = _check_coordinates(df, 'Gene annotation')

        if df['gene_id'].n_unique() != df.height:
            raise InvalidInputError("Gene annotation has duplicate gene_id values")
        bad_strand = df.filter(~pl.col('strand').is_in(['+', '-']))
        if bad_strand.height > 0:
            raise InvalidInputError(f"Gene annotation has {bad_strand.height} gene(s) with strand not '+' or '-'")

        if 'length' not in df.columns:
            df = df.with_columns((pl.col('end') - pl.col('start') + 1).alias('length'))

        mappa_cols = [col for col in df.columns if col == 'mappa' or col.startswith('mappa_')]
        try:
            df = df.with_columns(
                pl.col('length').cast(pl.Float64),
                *[pl.col(col).cast(pl.Float64) for col in mappa_cols],
            )
        except pl.exceptions.PolarsError as e:
            raise InvalidInputError(f"Gene annotation has non-numeric length or mappability values: {e}") from e
        for col in mappa_cols:
            _check_mappa_range(df[col], f"Gene annotation column '{col}'")

        return df.with_columns(
            pl.when(pl.col('strand') == '+').then(pl.col('start')).otherwise(pl.col('end')).alias('tss')
        ).sort('gene_id')

    @staticmethod
    def _validate_exons(exons: pl.DataFrame) -> pl.DataFrame:
        gene_col = _pick_column(exons, _GENE_ID_ALIASES, 'gene_id', 'Exon table')
        chrom_col = _pick_column(exons, _CHROM_ALIASES, 'chrom', 'Exon table')
        if 'start' not in exons.columns or 'end' not in exons.columns:
            raise InvalidInputError("Exon table is missing required columns 'start' and/or 'end'")
        df = exons.select(
            pl.col(gene_col).cast(pl.Utf8).alias('gene_id'),
            pl.col(chrom_col).cast(pl.Utf8).alias('chrom'),
            'start',
            'end',
        )
        return _check_coordinates(df, 'Exon table')

    @property
    def chromosomes(self) -> List[str]:
        return sorted(self.genes['chrom'].unique().to_list())

    @property
    def gene_ids(self) -> List[str]:
        return self.genes['gene_id'].to_list()

    def mappability_column(self, read_length: int) -> Optional[str]:
        """Name of the built-in mappability column for a read length, if present."""
        for col in (f'mappa_{read_length}', 'mappa'):
            if col in self.genes.columns:
                return col
        return None

    def __len__(self) -> int:
        return self.genes.height


def load_gene_annotation(
    file_path: PathLike,
    genome: str,
    exons_path: Optional[PathLike] = None
) -> GeneAnnotation:
    """
    Load a tab-delimited gene annotation with header.

    Args:
        file_path: Path to the gene annotation file
        genome: Genome build
        exons_path: Optional path to a tab-delimited exon table

    Returns:
        GeneAnnotation
    """
    genes = _read_table(file_path, 'Gene annotation', has_header=True, infer_schema_length=0)
    exons = None
    if exons_path is not None:
        exons = _read_table(exons_path, 'Exon', has_header=True, infer_schema_length=0)
    return GeneAnnotation(genes, genome=genome, exons=exons)


# Gene sets

class GenesetDatabase:
    """A named collection of gene sets: geneset id -> set of gene ids."""

    def __init__(
        self,
        name: str,
        genesets: Dict[str, FrozenSet[str]],
        descriptions: Optional[Dict[str, str]] = None
    ):
        self.name = name
        self.genesets = {gs_id: frozenset(map(str, genes)) for gs_id, genes in genesets.items()}
        self.descriptions = dict(descriptions or {})

    @classmethod
    def from_frame(cls, df: pl.DataFrame, name: str) -> 'GenesetDatabase':
        """
        Build a database from a membership table.

        Column 1 is the geneset identifier and column 2 the gene identifier, one
        row per membership. An optional third column holds a description.
        """
        if df.width < 2:
            raise InvalidInputError(f"Geneset table '{name}' must have at least two columns")
        if df.height == 0:
            raise InvalidInputError(f"Geneset table '{name}' is empty")

        gs_col, gene_col = df.columns[0], df.columns[1]
        members = df.select(
            pl.col(gs_col).cast(pl.Utf8).alias('geneset_id'),
            pl.col(gene_col).cast(pl.Utf8).alias('gene_id'),
        ).drop_nulls()
        if members.height == 0:
            raise InvalidInputError(f"Geneset table '{name}' has no complete membership rows")

        grouped = members.group_by('geneset_id').agg(pl.col('gene_id').unique())
        genesets = {row['geneset_id']: frozenset(row['gene_id']) for row in grouped.iter_rows(named=True)}

        descriptions = {}
        if df.width >= 3:
            desc = df.select(
                pl.col(gs_col).cast(pl.Utf8).alias('geneset_id'),
                pl.col(df.columns[2]).cast(pl.Utf8).alias('description'),
            ).drop_nulls().unique(subset='geneset_id', keep='first')
            descriptions = dict(desc.iter_rows())

        return cls(name, genesets, descriptions)

    def __len__(self) -> int:
        return len(self.genesets)

    def __iter__(self) -> Iterator[Tuple[str, FrozenSet[str]]]:
        return iter(sorted(self.genesets.items()))

    def description(self, geneset_id: str) -> Optional[str]:
        return self.descriptions.get(geneset_id)


def load_genesets(file_path: PathLike, name: Optional[str] = None) -> GenesetDatabase:
    """
    Load a tab-delimited geneset file with header.

    Args:
        file_path: Path to geneset membership file
        name: Database name; defaults to the file stem

    Returns:
        GenesetDatabase
    """
    df = _read_table(file_path, 'Geneset', has_header=True, infer_schema_length=0)
    return GenesetDatabase.from_frame(df, name or Path(file_path).stem)


# Custom locus definitions and mappability

def validate_locusdef(df: pl.DataFrame) -> pl.DataFrame:
    """
    Validate a custom locus definition table.

    Returns:
        DataFrame with chrom, start, end and gene_id columns
    """
    if df.height == 0:
        raise InvalidInputError("Custom locus definition is empty")
    chrom_col = _pick_column(df, _CHROM_ALIASES, 'chr', 'Custom locus definition')
    gene_col = _pick_column(df, _GENE_ID_ALIASES, 'gene_id', 'Custom locus definition')
    missing = [col for col in ('start', 'end') if col not in df.columns]
    if missing:
        raise InvalidInputError(f"Custom locus definition is missing required columns: {', '.join(missing)}")

    out = df.select(
        pl.col(chrom_col).cast(pl.Utf8).alias('chrom'),
        'start',
        'end',
        pl.col(gene_col).cast(pl.Utf8).alias('gene_id'),
    )
    return _check_coordinates(out, 'Custom locus definition')


def load_locusdef(file_path: PathLike) -> pl.DataFrame:
    """Load and validate a tab-delimited custom locus definition with header."""
    df = _read_table(file_path, 'Locus definition', has_header=True, infer_schema_length=0)
    return validate_locusdef(df)


def _check_mappa_range(values: pl.Series, what: str) -> None:
    if values.null_count() == values.len():
        return
    lo, hi = values.min(), values.max()
    if (lo is not None and lo < 0) or (hi is not None and hi > 1):
        raise InvalidInputError(f"{what} has mappability values outside [0, 1] (min={lo}, max={hi})")


def validate_mappability(df: pl.DataFrame) -> pl.DataFrame:
    """
    Validate a custom mappability table.

    Returns:
        DataFrame with gene_id (string) and mappa (float in [0, 1]) columns
    """
    missing = [col for col in ('gene_id', 'mappa') if col not in df.columns]
    if missing:
        raise InvalidInputError(f"Mappability table is missing required columns: {', '.join(missing)}")

    try:
        out = df.select(pl.col('gene_id').cast(pl.Utf8), pl.col('mappa').cast(pl.Float64))
    except pl.exceptions.PolarsError as e:
        raise InvalidInputError(f"Mappability values must be numeric: {e}") from e

    if out['mappa'].null_count() > 0:
        raise InvalidInputError("Mappability table has missing mappa values")
    _check_mappa_range(out['mappa'], 'Mappability table')
    if out['gene_id'].n_unique() != out.height:
        raise InvalidInputError("Mappability table has duplicate gene_id values")
    return out


def load_mappability(file_path: PathLike) -> pl.DataFrame:
    """Load and validate a tab-delimited mappability file with header."""
    df = _read_table(file_path, 'Mappability', has_header=True, infer_schema_length=0)
    return validate_mappability(df)
