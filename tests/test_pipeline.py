"""
Test cases for the peak enrichment pipeline.
"""

import logging
from unittest.mock import patch

import polars as pl
import pytest
from tomli_w import dump as tomli_w_dump

from peakenrich.cli import main
from peakenrich.config import EnrichmentOptions, Method, PipelineConfig
from peakenrich.data import GenesetDatabase
from peakenrich.enrichment import EnrichmentRun
from peakenrich.exceptions import PreconditionViolationError
from peakenrich.pipeline import EnrichmentPipeline, HybridRun, hybridenrich, run_enrichment

from conftest import BACKGROUND_GENES


@pytest.fixture
def input_files(temp_dir, gene_table, peaks, genesets):
    """Write the synthetic genome to tab-delimited files."""
    peaks_file = temp_dir / "peaks.narrowPeak"
    with open(peaks_file, 'w') as f:
        f.write("track name=test\n")
        for i, row in enumerate(peaks.iter_rows(named=True)):
            f.write(f"{row['chrom']}\t{row['start']}\t{row['end']}\tpeak{i}\t0\t.\t{row['signal']}\t-1\t-1\t100\n")

    annotation_file = temp_dir / "genes.tab"
    gene_table.write_csv(annotation_file, separator='\t')

    geneset_file = temp_dir / "test_db.tab"
    rows = [
        (gs_id, gene, genesets.description(gs_id) or '')
        for gs_id, genes in genesets
        for gene in sorted(genes)
    ]
    pl.DataFrame(rows, schema=['geneset_id', 'gene_id', 'description'], orient='row').write_csv(
        geneset_file, separator='\t'
    )
    return {'peaks': peaks_file, 'annotation': annotation_file, 'genesets': geneset_file}


@pytest.fixture
def config_file(temp_dir, input_files):
    config = {
        'input': {
            'peaks_file': str(input_files['peaks']),
            'annotation_file': str(input_files['annotation']),
            'geneset_files': [str(input_files['genesets'])],
        },
        'analysis': {
            'genome': 'hg19',
            'locusdef': 'nearest_tss',
            'methods': ['chipenrich', 'polyenrich'],
            'min_geneset_size': 15,
        },
        'output': {
            'out_path': str(temp_dir / 'results'),
            'out_name': 'test',
        },
    }
    config_path = temp_dir / 'config.toml'
    with open(config_path, 'wb') as f:
        tomli_w_dump(config, f)
    return config_path


def test_run_enrichment(peaks, annotation, genesets, options):
    run = run_enrichment(peaks, annotation, genesets, options, method='chipenrich')

    assert isinstance(run, EnrichmentRun)
    assert run.method == 'chipenrich'
    assert run.dropped_chromosomes == ['chrUn']
    assert 'GS_SMALL' in run.skipped['test_db']
    assert 'GS_SMALL' not in run.results['Geneset.ID'].to_list()


def test_run_enrichment_with_randomization(peaks, annotation, genesets):
    options = EnrichmentOptions(genome='hg19', randomization='complete', seed=3)
    run = run_enrichment(peaks, annotation, genesets, options, method=Method.FET)
    assert run.results.height > 0
    values = run.results['P.value'].to_numpy()
    assert ((values >= 0) & (values <= 1)).all()


def test_genome_mismatch(peaks, annotation, genesets):
    options = EnrichmentOptions(genome='mm10')
    with pytest.raises(PreconditionViolationError, match="does not match"):
        run_enrichment(peaks, annotation, genesets, options)


def test_hybridenrich(peaks, annotation, genesets, options):
    result = hybridenrich(peaks, annotation, genesets, options)

    assert isinstance(result, HybridRun)
    assert set(result.runs) == {'chipenrich', 'polyenrich'}
    assert result.hybrid.n_common == result.results.height
    for column in ('P.value.x', 'P.value.y', 'P.value.Hybrid', 'FDR.Hybrid', 'Status.Hybrid'):
        assert column in result.results.columns
    hot = result.results.filter(pl.col('Geneset.ID') == 'GS_HOT').row(0, named=True)
    assert hot['Status.Hybrid'] == 'enriched'
    assert hot['P.value.Hybrid'] == pytest.approx(2 * min(hot['P.value.x'], hot['P.value.y']))


@pytest.mark.parametrize('methods', [
    ['chipenrich'],
    ['chipenrich', 'polyenrich', 'fet'],
    [],
])
def test_hybrid_needs_exactly_two_methods(peaks, annotation, genesets, options, methods):
    with patch('peakenrich.pipeline.run_enrichment') as mock_run:
        with pytest.raises(PreconditionViolationError, match="exactly two methods"):
            hybridenrich(peaks, annotation, genesets, options, methods=methods)
    mock_run.assert_not_called()


def test_hybrid_rejects_duplicate_methods(peaks, annotation, genesets, options):
    with pytest.raises(PreconditionViolationError, match="two different methods"):
        hybridenrich(peaks, annotation, genesets, options, methods=['fet', 'fet'])


def test_hybrid_rejects_geneset_ids_shared_across_databases(peaks, annotation, genesets, options):
    other = GenesetDatabase('other_db', {'GS_HOT': frozenset(BACKGROUND_GENES)})
    with patch('peakenrich.pipeline.run_enrichment') as mock_run:
        with pytest.raises(PreconditionViolationError, match="more than one database"):
            hybridenrich(peaks, annotation, [genesets, other], options)
    mock_run.assert_not_called()


def test_run_enrichment_rejects_geneset_ids_shared_across_databases(peaks, annotation, genesets, options):
    other = GenesetDatabase('other_db', {'GS_HOT': frozenset(BACKGROUND_GENES)})
    with pytest.raises(PreconditionViolationError, match="GS_HOT"):
        run_enrichment(peaks, annotation, [genesets, other], options)


def test_unknown_method(peaks, annotation, genesets, options):
    with pytest.raises(PreconditionViolationError, match="Unsupported method"):
        hybridenrich(peaks, annotation, genesets, options, methods=['chipenrich', 'magic'])


def test_no_files_without_out_name(peaks, annotation, genesets, options, temp_dir):
    with patch('peakenrich.pipeline.ResultWriter') as mock_writer:
        hybridenrich(peaks, annotation, genesets, options, methods=['fet', 'chipapprox'], out_path=temp_dir)
    mock_writer.assert_not_called()
    assert list(temp_dir.iterdir()) == []


def test_out_name_requires_out_path(peaks, annotation, genesets, options):
    with pytest.raises(PreconditionViolationError, match="out_path"):
        hybridenrich(peaks, annotation, genesets, options, out_name='test')


def test_outputs_are_written(peaks, annotation, genesets, options, temp_dir):
    hybridenrich(
        peaks, annotation, genesets, options,
        methods=['chipenrich', 'polyenrich'], out_name='test', out_path=temp_dir,
    )
    written = sorted(path.name for path in temp_dir.iterdir())
    assert written == [
        'test_chip_peaks-per-gene.tab',
        'test_chip_peaks.tab',
        'test_chip_results.tab',
        'test_poly_peaks-per-gene.tab',
        'test_poly_peaks.tab',
        'test_poly_results.tab',
        'test_results.tab',
    ]
    hybrid = pl.read_csv(temp_dir / 'test_results.tab', separator='\t')
    assert 'P.value.Hybrid' in hybrid.columns


def test_persistence_failure_keeps_results(peaks, annotation, genesets, options, temp_dir, caplog):
    expected = hybridenrich(peaks, annotation, genesets, options, methods=['fet', 'chipapprox'])

    with patch.object(pl.DataFrame, 'write_csv', side_effect=OSError("disk full")):
        with caplog.at_level(logging.WARNING):
            result = hybridenrich(
                peaks, annotation, genesets, options,
                methods=['fet', 'chipapprox'], out_name='test', out_path=temp_dir,
            )

    assert result.results.equals(expected.results)
    assert "disk full" in caplog.text


def test_pipeline_from_config(config_file, temp_dir):
    pipeline = EnrichmentPipeline(config_file)
    assert pipeline.methods == [Method.CHIPENRICH, Method.POLYENRICH]
    assert pipeline.peaks.height > 0

    result = pipeline.run()
    assert isinstance(result, HybridRun)
    assert (temp_dir / 'results' / 'test_results.tab').exists()

    saved = temp_dir / 'results' / 'test_config.toml'
    assert PipelineConfig(saved).config == pipeline.config.config


def test_cli(config_file, temp_dir):
    main([str(config_file), '--methods', 'fet', '--out-name', 'cli'])
    assert (temp_dir / 'results' / 'cli_results.tab').exists()
    assert (temp_dir / 'results' / 'logs' / 'pipeline.log').exists()
    assert (temp_dir / 'results' / 'cli_config.toml').exists()


def test_cli_reports_failures(config_file):
    with pytest.raises(SystemExit) as exc:
        main([str(config_file), '--methods', 'chipenrich', 'polyenrich', 'fet'])
    assert exc.value.code == 1


def test_cli_missing_config(temp_dir):
    with pytest.raises(SystemExit):
        main([str(temp_dir / 'missing.toml')])
