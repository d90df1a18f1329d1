"""
Orchestration: single enrichment runs and the two-method hybrid.
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union
import logging
import time

import polars as pl

from .config import EnrichmentOptions, Method, PipelineConfig, parse_methods
from .covariates import build_design, randomize_design
from .data import GeneAnnotation, GenesetDatabase, load_gene_annotation, load_genesets, load_peaks
from .enrichment import EnrichmentEngine, EnrichmentRun, check_distinct_genesets
from .exceptions import PreconditionViolationError
from .hybrid import HybridResult, hybrid_join
from .locus import PeakAssigner
from .output import ResultWriter

logger = logging.getLogger(__name__)

PeaksInput = Union[pl.DataFrame, str, Path]
GenesetsInput = Union[GenesetDatabase, Sequence[GenesetDatabase]]


@dataclass
class HybridRun:
    """The hybrid table together with the two runs it was built from."""

    hybrid: HybridResult
    runs: Dict[str, EnrichmentRun]

    @property
    def results(self) -> pl.DataFrame:
        return self.hybrid.results


def _check_output(out_name: Optional[str], out_path: Optional[Union[str, Path]]) -> None:
    if out_name is not None and out_path is None:
        raise PreconditionViolationError("out_path is required when out_name is given")


def _as_databases(genesets: GenesetsInput) -> List[GenesetDatabase]:
    databases = [genesets] if isinstance(genesets, GenesetDatabase) else list(genesets)
    if not databases:
        raise PreconditionViolationError("At least one gene set database is required")
    names = [db.name for db in databases]
    if len(set(names)) != len(names):
        raise PreconditionViolationError(f"Gene set database names must be unique: {', '.join(names)}")
    check_distinct_genesets(databases)
    return databases


def _as_peaks(peaks: PeaksInput) -> pl.DataFrame:
    if isinstance(peaks, pl.DataFrame):
        return peaks
    return load_peaks(peaks)


def run_enrichment(
    peaks: PeaksInput,
    annotation: GeneAnnotation,
    genesets: GenesetsInput,
    options: EnrichmentOptions,
    method: Union[Method, str] = Method.CHIPENRICH,
    out_name: Optional[str] = None,
    out_path: Optional[Union[str, Path]] = None
) -> EnrichmentRun:
    """
    Run one complete enrichment pipeline.

    Assigns peaks to genes, builds the design table, optionally randomises it,
    tests every gene set and, when ``out_name`` is given, writes the outputs
    under ``out_path`` with ``out_name`` as the file prefix.

    Args:
        peaks: Peak table or path to a BED-like peak file
        annotation: Gene annotation for ``options.genome``
        genesets: One or more gene set databases
        options: Shared enrichment options
        method: Test to run
        out_name: File prefix; None writes nothing
        out_path: Output directory, required with ``out_name``

    Returns:
        EnrichmentRun
    """
    method = parse_methods(method)[0]
    _check_output(out_name, out_path)
    if annotation.genome != options.genome:
        raise PreconditionViolationError(
            f"Annotation genome {annotation.genome} does not match requested genome {options.genome}"
        )
    databases = _as_databases(genesets)

    assignment = PeakAssigner(annotation, options.locusdef).assign(_as_peaks(peaks))

    weighting = options.weighting if method.is_count else ()
    design = build_design(
        assignment,
        annotation,
        mappability=options.mappability,
        num_peak_threshold=options.num_peak_threshold,
        weighting=weighting,
    )
    if options.randomization is not None:
        design = randomize_design(
            design, options.randomization, seed=options.seed, bin_size=options.randomization_bin_size
        )

    engine = EnrichmentEngine(
        design,
        method=method,
        min_geneset_size=options.min_geneset_size,
        max_geneset_size=options.max_geneset_size,
        weighted=bool(weighting),
        spline_df=options.spline_df,
        n_cores=options.n_cores,
    )
    run = replace(engine.test(databases), dropped_chromosomes=list(assignment.dropped_chromosomes))

    if out_name is not None:
        ResultWriter(out_path).write_run(out_name, run, assignment=assignment, design=design)
    return run


def hybridenrich(
    peaks: PeaksInput,
    annotation: GeneAnnotation,
    genesets: GenesetsInput,
    options: EnrichmentOptions,
    methods: Sequence[Union[Method, str]] = (Method.CHIPENRICH, Method.POLYENRICH),
    out_name: Optional[str] = None,
    out_path: Optional[Union[str, Path]] = None
) -> HybridRun:
    """
    Run two enrichment methods with shared options and combine their p-values.

    Each run writes under ``<out_name>_<short name>`` (``chip``, ``poly``, or
    the method name otherwise) and the hybrid table goes to
    ``<out_name>_results.tab``. Nothing is written when ``out_name`` is None.

    Args:
        peaks: Peak table or path to a BED-like peak file
        annotation: Gene annotation for ``options.genome``
        genesets: One or more gene set databases
        options: Options shared by both runs
        methods: Exactly two distinct methods
        out_name: File prefix; None writes nothing
        out_path: Output directory, required with ``out_name``

    Returns:
        HybridRun
    """
    methods = parse_methods(methods)
    if len(methods) != 2:
        raise PreconditionViolationError(
            f"Hybrid enrichment needs exactly two methods, got {len(methods)}"
        )
    if methods[0] == methods[1]:
        raise PreconditionViolationError(f"Hybrid enrichment needs two different methods, got {methods[0].value} twice")
    _check_output(out_name, out_path)
    genesets = _as_databases(genesets)

    peaks = _as_peaks(peaks)
    runs = {}
    for method in methods:
        logger.info(f"Running {method.value}")
        run_name = f"{out_name}_{method.short_name}" if out_name is not None else None
        runs[method.value] = run_enrichment(
            peaks, annotation, genesets, options, method=method, out_name=run_name, out_path=out_path
        )

    first, second = (runs[m.value] for m in methods)
    hybrid = hybrid_join(first, second)

    if out_name is not None:
        ResultWriter(out_path).write_hybrid(out_name, hybrid)
    return HybridRun(hybrid=hybrid, runs=runs)


class EnrichmentPipeline:
    """Runs enrichment from a TOML configuration file."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the pipeline with a configuration file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config = PipelineConfig(config_path)
        self.logger = logging.getLogger(__name__)
        self.options = self.config.options()
        self.methods = self.config.methods
        self._load_input_data()

    def _load_input_data(self):
        """Load and validate input data files."""
        self.logger.debug("Starting to load input data files")
        inputs = self.config.input_files

        self.peaks = load_peaks(inputs['peaks_file'])
        self.annotation = load_gene_annotation(
            inputs['annotation_file'], genome=self.options.genome, exons_path=inputs.get('exons_file')
        )
        self.genesets = [load_genesets(path) for path in self.config.geneset_files]

        self.logger.info(f"Loaded {self.peaks.height} peaks")
        self.logger.info(f"Loaded {len(self.annotation)} genes for genome {self.annotation.genome}")
        for db in self.genesets:
            self.logger.info(f"Loaded {len(db)} gene sets from {db.name}")
        self.logger.debug("Finished loading input data files")

    def run(self) -> Union[EnrichmentRun, HybridRun]:
        """Run one method, or the hybrid when two methods are configured."""
        start_time = time.time()
        self.logger.info("Starting peak enrichment pipeline")

        out_path = self.config.get_output_path()
        out_name = self.config.out_name
        if out_name is not None and out_path is None:
            raise PreconditionViolationError("output.out_path is required when output.out_name is set")

        if len(self.methods) == 1:
            result = run_enrichment(
                self.peaks, self.annotation, self.genesets, self.options,
                method=self.methods[0], out_name=out_name, out_path=out_path,
            )
            n_results = result.results.height
        else:
            result = hybridenrich(
                self.peaks, self.annotation, self.genesets, self.options,
                methods=self.methods, out_name=out_name, out_path=out_path,
            )
            n_results = result.results.height

        if out_name is not None:
            config_out = out_path / f"{out_name}_config.toml"
            try:
                self.config.save_config(config_out)
                self.logger.info(f"Saved run configuration to {config_out}")
            except OSError as e:
                self.logger.warning(f"Could not write {config_out}: {e}")

        elapsed_time = time.time() - start_time
        self.logger.info(f"Pipeline completed in {elapsed_time:.2f} seconds with {n_results} result rows")
        return result
