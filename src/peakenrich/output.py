"""
Writing result tables to disk.

Writes never raise on I/O errors: a failed write is logged and the caller
keeps its in-memory results.
"""

from pathlib import Path
from typing import Dict, Optional, Union
import logging

import polars as pl

from .enrichment import EnrichmentRun
from .hybrid import HybridResult
from .locus import PeakAssignment
from .utils import ensure_dir

logger = logging.getLogger(__name__)


class ResultWriter:
    """Writes tab-delimited outputs into one directory."""

    def __init__(self, out_path: Union[str, Path]):
        self.out_path = Path(out_path)

    def _write(self, df: pl.DataFrame, file_name: str) -> Optional[Path]:
        path = self.out_path / file_name
        try:
            ensure_dir(self.out_path)
            df.write_csv(path, separator='\t')
        except OSError as e:
            logger.warning(f"Could not write {path}: {e}")
            return None
        logger.debug(f"Wrote {df.height} rows to {path}")
        return path

    def write_run(
        self,
        prefix: str,
        run: EnrichmentRun,
        assignment: Optional[PeakAssignment] = None,
        design: Optional[pl.DataFrame] = None
    ) -> Dict[str, Path]:
        """
        Write one run's results, and optionally its peak assignment and design table.

        Files are ``<prefix>_results.tab``, ``<prefix>_peaks.tab`` and
        ``<prefix>_peaks-per-gene.tab``.

        Returns:
            Mapping of output kind -> path, for the files actually written
        """
        outputs = {'results': run.results}
        if assignment is not None:
            outputs['peaks'] = assignment.peaks
        if design is not None:
            outputs['peaks-per-gene'] = design

        written = {}
        for kind, df in outputs.items():
            path = self._write(df, f"{prefix}_{kind}.tab")
            if path is not None:
                written[kind] = path
        if written:
            logger.info(f"Saved {run.method} outputs to {self.out_path} with prefix '{prefix}'")
        return written

    def write_hybrid(self, out_name: str, hybrid: HybridResult) -> Optional[Path]:
        """Write the hybrid table to ``<out_name>_results.tab``."""
        return self._write(hybrid.results, f"{out_name}_results.tab")
