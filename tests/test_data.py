"""Tests for input loading and validation."""

import pytest
import polars as pl

from peakenrich.data import (
    GeneAnnotation,
    GenesetDatabase,
    load_gene_annotation,
    load_genesets,
    load_locusdef,
    load_mappability,
    load_peaks,
    validate_peaks,
)
from peakenrich.exceptions import InvalidInputError


@pytest.fixture
def peaks_file(temp_dir):
    """Create a narrowPeak file with a track line and a comment."""
    path = temp_dir / "peaks.narrowPeak"
    path.write_text(
        "track name=peaks\n"
        "# comment\n"
        "chr2\t500\t700\tp1\t0\t.\t12.5\t-1\t-1\t100\n"
        "chr1\t100\t300\tp2\t0\t.\t3.0\t-1\t-1\t100\n"
    )
    return path


@pytest.fixture
def annotation_file(temp_dir):
    path = temp_dir / "genes.tab"
    path.write_text(
        "geneid\tchr\tstart\tend\tstrand\tsymbol\tmappa_36\n"
        "2\tchr1\t1000\t1999\t+\tTWO\t0.8\n"
        "1\tchr1\t5000\t6000\t-\tONE\t0.5\n"
    )
    return path


@pytest.fixture
def geneset_file(temp_dir):
    path = temp_dir / "kegg.tab"
    path.write_text(
        "geneset\tgene\tdescription\n"
        "path:1\tA\tFirst pathway\n"
        "path:1\tB\tFirst pathway\n"
        "path:1\tB\tFirst pathway\n"
        "path:2\tC\t\n"
    )
    return path


def test_load_peaks(peaks_file):
    peaks = load_peaks(peaks_file)
    assert peaks.columns == ['chrom', 'start', 'end', 'signal']
    assert peaks.height == 2
    assert peaks['signal'].to_list() == [12.5, 3.0]
    assert peaks['start'].dtype == pl.Int64


def test_load_bed3_peaks(temp_dir):
    path = temp_dir / "peaks.bed"
    path.write_text("chr1\t100\t200\nchr1\t300\t400\n")
    peaks = load_peaks(path)
    assert peaks['signal'].null_count() == 2


def test_load_peaks_missing_file(temp_dir):
    with pytest.raises(InvalidInputError, match="not found"):
        load_peaks(temp_dir / "missing.bed")


def test_load_peaks_too_few_columns(temp_dir):
    path = temp_dir / "peaks.bed"
    path.write_text("chr1\t100\n")
    with pytest.raises(InvalidInputError, match="at least 3"):
        load_peaks(path)


@pytest.mark.parametrize('start, end', [(-5, 10), (20, 10)])
def test_validate_peaks_bad_intervals(start, end):
    peaks = pl.DataFrame({'chrom': ['chr1'], 'start': [start], 'end': [end]})
    with pytest.raises(InvalidInputError, match="negative start or end before start"):
        validate_peaks(peaks)


def test_validate_peaks_missing_column():
    with pytest.raises(InvalidInputError, match="chrom"):
        validate_peaks(pl.DataFrame({'start': [1], 'end': [2]}))


def test_validate_peaks_non_numeric_coordinates():
    peaks = pl.DataFrame({'chrom': ['chr1'], 'start': ['abc'], 'end': ['10']})
    with pytest.raises(InvalidInputError, match="non-integer"):
        validate_peaks(peaks)


def test_load_gene_annotation(annotation_file):
    annotation = load_gene_annotation(annotation_file, genome='hg19')

    genes = annotation.genes
    assert genes['gene_id'].to_list() == ['1', '2']
    assert genes['tss'].to_list() == [6000, 1000]
    assert genes['length'].to_list() == [1001.0, 1000.0]
    assert annotation.chromosomes == ['chr1']
    assert annotation.mappability_column(36) == 'mappa_36'
    assert annotation.mappability_column(50) is None
    assert len(annotation) == 2


def test_annotation_rejects_bad_strand():
    genes = pl.DataFrame({'gene_id': ['A'], 'chrom': ['chr1'], 'start': [1], 'end': [10], 'strand': ['*']})
    with pytest.raises(InvalidInputError, match="strand"):
        GeneAnnotation(genes, genome='hg19')


def test_annotation_rejects_duplicate_genes():
    genes = pl.DataFrame({
        'gene_id': ['A', 'A'], 'chrom': ['chr1', 'chr1'], 'start': [1, 5], 'end': [10, 20], 'strand': ['+', '+'],
    })
    with pytest.raises(InvalidInputError, match="duplicate"):
        GeneAnnotation(genes, genome='hg19')


def test_annotation_rejects_out_of_range_mappability():
    genes = pl.DataFrame({
        'gene_id': ['A'], 'chrom': ['chr1'], 'start': [1], 'end': [10], 'strand': ['+'], 'mappa': [1.2],
    })
    with pytest.raises(InvalidInputError, match="mappability"):
        GeneAnnotation(genes, genome='hg19')


def test_load_genesets(geneset_file):
    db = load_genesets(geneset_file)

    assert db.name == 'kegg'
    assert len(db) == 2
    assert db.genesets['path:1'] == frozenset({'A', 'B'})
    assert db.description('path:1') == 'First pathway'
    assert db.description('path:2') is None
    assert [gs_id for gs_id, _ in db] == ['path:1', 'path:2']


def test_geneset_table_needs_two_columns():
    with pytest.raises(InvalidInputError, match="two columns"):
        GenesetDatabase.from_frame(pl.DataFrame({'geneset': ['x']}), 'bad')


def test_load_locusdef(temp_dir):
    path = temp_dir / "loci.tab"
    path.write_text("chr\tstart\tend\tgeneid\nchr1\t10\t20\tA\n")
    locusdef = load_locusdef(path)
    assert locusdef.columns == ['chrom', 'start', 'end', 'gene_id']
    assert locusdef.row(0) == ('chr1', 10, 20, 'A')


def test_load_locusdef_missing_columns(temp_dir):
    path = temp_dir / "loci.tab"
    path.write_text("chr\tstart\tgeneid\nchr1\t10\tA\n")
    with pytest.raises(InvalidInputError, match="end"):
        load_locusdef(path)


def test_load_mappability(temp_dir):
    path = temp_dir / "mappa.tab"
    path.write_text("gene_id\tmappa\n1\t0.25\n2\t1\n")
    mappa = load_mappability(path)
    assert mappa['mappa'].to_list() == [0.25, 1.0]
    assert mappa['gene_id'].to_list() == ['1', '2']


@pytest.mark.parametrize('content, message', [
    ("gene_id\tmappa\n1\t1.5\n", r"outside \[0, 1\]"),
    ("gene_id\tmappa\n1\thigh\n", "numeric"),
    ("gene_id\tscore\n1\t0.5\n", "mappa"),
    ("gene_id\tmappa\n1\t0.5\n1\t0.6\n", "duplicate"),
])
def test_load_mappability_rejects_malformed(temp_dir, content, message):
    path = temp_dir / "mappa.tab"
    path.write_text(content)
    with pytest.raises(InvalidInputError, match=message):
        load_mappability(path)
