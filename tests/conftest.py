"""Shared fixtures: a small synthetic genome with enriched and depleted gene sets."""

import tempfile
from pathlib import Path

import numpy as np
import polars as pl
import pytest

from peakenrich.config import EnrichmentOptions
from peakenrich.data import GeneAnnotation, GenesetDatabase

N_GENES = 200
HOT_GENES = [f"G{i:03d}" for i in range(40)]
# every fifth hot gene is left without peaks so membership never separates perfectly
HOT_WITH_PEAKS = [g for g in HOT_GENES if int(g[1:]) % 5 != 4]
BACKGROUND_GENES = [f"G{i:03d}" for i in range(100, 140)]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def gene_table():
    """200 non-overlapping genes on two chromosomes with varied lengths."""
    rng = np.random.default_rng(7)
    idx = np.arange(N_GENES)
    start = 10_000 + (idx % 100) * 20_000
    length = rng.integers(1_000, 15_000, N_GENES)
    return pl.DataFrame({
        'gene_id': [f"G{i:03d}" for i in idx],
        'chrom': ['chr1' if i < 100 else 'chr2' for i in idx],
        'start': start,
        'end': start + length - 1,
        'strand': ['+' if i % 2 == 0 else '-' for i in idx],
        'mappa': rng.uniform(0.5, 1.0, N_GENES),
        'mappa_36': rng.uniform(0.4, 1.0, N_GENES),
    })


@pytest.fixture
def annotation(gene_table):
    return GeneAnnotation(gene_table, genome='hg19')


@pytest.fixture
def peaks(gene_table):
    """Two peaks near the TSS of most hot genes, one near every fifth other gene, two on chrUn."""
    rng = np.random.default_rng(11)
    rows = []
    for row in gene_table.iter_rows(named=True):
        tss = row['start'] if row['strand'] == '+' else row['end']
        i = int(row['gene_id'][1:])
        if row['gene_id'] in HOT_WITH_PEAKS:
            offsets = [-300, 400]
        elif row['gene_id'] in HOT_GENES:
            offsets = []
        elif i % 5 == 0:
            offsets = [200]
        else:
            offsets = []
        for offset in offsets:
            mid = tss + offset
            rows.append((row['chrom'], mid - 100, mid + 100, float(rng.uniform(2, 50))))
    rows.append(('chrUn', 100, 300, 5.0))
    rows.append(('chrUn', 1000, 1200, 7.0))
    return pl.DataFrame(rows, schema=['chrom', 'start', 'end', 'signal'], orient='row')


@pytest.fixture
def genesets():
    everyone = [f"G{i:03d}" for i in range(N_GENES)]
    return GenesetDatabase(
        'test_db',
        {
            'GS_HOT': frozenset(HOT_GENES),
            'GS_BACKGROUND': frozenset(BACKGROUND_GENES),
            'GS_THIRDS': frozenset(everyone[::3]),
            'GS_SMALL': frozenset(HOT_GENES[:5]),
            'GS_UNKNOWN': frozenset(f"X{i}" for i in range(20)),
        },
        descriptions={'GS_HOT': 'Genes with promoter peaks'},
    )


@pytest.fixture
def options():
    return EnrichmentOptions(genome='hg19')
