#!/usr/bin/env python3
"""
Command line interface for the rankpath enrichment pipeline.
"""

import argparse
import logging
import sys
from pathlib import Path

import tomli
from tomli_w import dump

from .pipeline import ActivePathwaysPipeline
from .stats import CorrectionMethod, MergeMethod
from .utils import setup_logging


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run pathway enrichment analysis of merged p-values"
    )

    parser.add_argument(
        "config_file",
        type=str,
        help="Path to TOML configuration file"
    )

    input_group = parser.add_argument_group("Input file overrides")
    input_group.add_argument(
        "--scores",
        type=str,
        help="Override scores matrix file path"
    )
    input_group.add_argument(
        "--gmt",
        type=str,
        help="Override GMT file path"
    )
    input_group.add_argument(
        "--background",
        type=str,
        help="Override background gene list file path"
    )

    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument(
        "--output-dir",
        type=str,
        help="Override output directory"
    )
    output_group.add_argument(
        "--cytoscape-file-tag",
        type=str,
        help="Write Cytoscape files with this prefix inside the output directory"
    )

    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument(
        "--cutoff",
        type=float,
        help="Override maximum merged p-value for a gene to be ranked"
    )
    analysis_group.add_argument(
        "--significant",
        type=float,
        help="Override maximum corrected p-value for a significant term"
    )
    analysis_group.add_argument(
        "--merge-method",
        choices=[m.value for m in MergeMethod],
        help="Override p-value merging method"
    )
    analysis_group.add_argument(
        "--correction-method",
        choices=[m.value for m in CorrectionMethod],
        help="Override multiple-testing correction method"
    )
    analysis_group.add_argument(
        "--num-threads",
        type=int,
        help="Override number of worker processes"
    )

    return parser.parse_args(argv)


def update_config(config: dict, args: argparse.Namespace):
    """Update configuration with command line overrides."""
    for section in ('input', 'output', 'analysis'):
        config.setdefault(section, {})

    if args.scores:
        config['input']['scores_file'] = args.scores
    if args.gmt:
        config['input']['gmt_file'] = args.gmt
    if args.background:
        config['input']['background_file'] = args.background

    if args.output_dir:
        config['output']['directory'] = args.output_dir
    if args.cytoscape_file_tag:
        config['output']['cytoscape_file_tag'] = args.cytoscape_file_tag

    if args.cutoff is not None:
        config['analysis']['cutoff'] = args.cutoff
    if args.significant is not None:
        config['analysis']['significant'] = args.significant
    if args.merge_method:
        config['analysis']['merge_method'] = args.merge_method
    if args.correction_method:
        config['analysis']['correction_method'] = args.correction_method
    if args.num_threads:
        config['analysis']['num_threads'] = args.num_threads

    return config


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    try:
        with open(args.config_file, 'rb') as f:
            config = tomli.load(f)
    except Exception as e:
        print(f"Error loading configuration file: {str(e)}")
        sys.exit(1)

    config = update_config(config, args)

    # Set up logging first, before any pipeline operations
    output_dir = Path(config['output'].get('directory', 'results'))
    setup_logging(output_dir / 'logs')

    logging.info("Starting pathway enrichment pipeline")
    logging.info(f"Using configuration file: {args.config_file}")

    temp_config_path = Path(args.config_file).parent / "temp_config.toml"
    with open(temp_config_path, 'wb') as f:
        dump(config, f)

    try:
        pipeline = ActivePathwaysPipeline(str(temp_config_path))
        pipeline.run()
        logging.info("Pipeline execution completed successfully")
    except Exception as e:
        logging.error(f"Pipeline execution failed: {str(e)}")
        sys.exit(1)
    finally:
        temp_config_path.unlink()


if __name__ == "__main__":
    main()
