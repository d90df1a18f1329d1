#!/usr/bin/env python3
"""
Command line interface for the peak enrichment pipeline.
"""

import argparse
import logging
import sys
import tempfile
from pathlib import Path

import tomli
from tomli_w import dump

from .exceptions import EnrichmentError
from .pipeline import EnrichmentPipeline
from .utils import setup_logging


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run gene set enrichment on ChIP-seq peaks"
    )

    parser.add_argument(
        "config_file",
        type=str,
        help="Path to TOML configuration file"
    )

    input_group = parser.add_argument_group("Input file overrides")
    input_group.add_argument(
        "--peaks",
        type=str,
        help="Override peak file path"
    )
    input_group.add_argument(
        "--annotation",
        type=str,
        help="Override gene annotation file path"
    )
    input_group.add_argument(
        "--genesets",
        type=str,
        nargs="+",
        help="Override gene set file paths"
    )

    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument(
        "--out-path",
        type=str,
        help="Override output directory"
    )
    output_group.add_argument(
        "--out-name",
        type=str,
        help="Override output file prefix"
    )

    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument(
        "--methods",
        type=str,
        nargs="+",
        help="Override enrichment methods (one, or two for a hybrid run)"
    )
    analysis_group.add_argument(
        "--locusdef",
        type=str,
        help="Override locus definition"
    )
    analysis_group.add_argument(
        "--n-cores",
        type=int,
        help="Override number of worker processes"
    )
    analysis_group.add_argument(
        "--randomization",
        type=str,
        choices=["complete", "bylength", "bylocation"],
        help="Randomise peak assignment to check calibration"
    )
    analysis_group.add_argument(
        "--seed",
        type=int,
        help="Random seed for randomisation"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log debug messages"
    )

    return parser.parse_args(argv)


def update_config(config: dict, args: argparse.Namespace) -> dict:
    """Update configuration with command line overrides."""
    config.setdefault('input', {})
    config.setdefault('analysis', {})
    config.setdefault('output', {})

    if args.peaks:
        config['input']['peaks_file'] = args.peaks
    if args.annotation:
        config['input']['annotation_file'] = args.annotation
    if args.genesets:
        config['input']['geneset_files'] = args.genesets

    if args.out_path:
        config['output']['out_path'] = args.out_path
    if args.out_name:
        config['output']['out_name'] = args.out_name

    if args.methods:
        config['analysis']['methods'] = args.methods
    if args.locusdef:
        config['analysis']['locusdef'] = args.locusdef
    if args.n_cores:
        config['analysis']['n_cores'] = args.n_cores
    if args.randomization:
        config['analysis']['randomization'] = args.randomization
    if args.seed is not None:
        config['analysis']['seed'] = args.seed

    return config


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    try:
        with open(args.config_file, 'rb') as f:
            config = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        print(f"Error loading configuration file: {str(e)}", file=sys.stderr)
        sys.exit(1)

    config = update_config(config, args)

    out_path = config['output'].get('out_path')
    log_dir = Path(out_path) / 'logs' if out_path else None
    setup_logging(log_dir, level=logging.DEBUG if args.verbose else logging.INFO)

    logging.info("Starting peak enrichment pipeline")
    logging.info(f"Using configuration file: {args.config_file}")

    with tempfile.TemporaryDirectory() as tmp_dir:
        temp_config_path = Path(tmp_dir) / "config.toml"
        with open(temp_config_path, 'wb') as f:
            dump(config, f)

        try:
            pipeline = EnrichmentPipeline(temp_config_path)
            pipeline.run()
            logging.info("Pipeline execution completed successfully")
        except (EnrichmentError, ValueError) as e:
            logging.error(f"Pipeline execution failed: {str(e)}")
            sys.exit(1)


if __name__ == "__main__":
    main()
