"""Configuration handling for the rankpath enrichment pipeline."""

import tomli
import tomli_w
from pathlib import Path
from typing import Any, Optional, Tuple, Union

DEFAULT_ANALYSIS = {
    "cutoff": 0.1,
    "significant": 0.05,
    "merge_method": "Brown",
    "correction_method": "holm",
    "geneset_filter": [5, 1000],
    "num_threads": 1,
}

# Written in a TOML filter bound to leave that side unbounded
UNBOUNDED = "NA"


class PipelineConfig:
    """Configuration class for the enrichment pipeline."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = config_path

        try:
            with open(config_path, "rb") as f:
                self.config = tomli.load(f)
        except FileNotFoundError:
            raise ValueError(f"Error loading configuration file: {config_path} does not exist")
        except Exception as e:
            raise ValueError(f"Error loading configuration file: {str(e)}")

        required_sections = ['input', 'output', 'analysis']
        missing_sections = [section for section in required_sections if section not in self.config]
        if missing_sections:
            raise ValueError(f"Missing required sections in configuration: {', '.join(missing_sections)}")

        self.input_files = self.config.get("input", {})

        required_input_files = ['scores_file', 'gmt_file']
        missing_files = [file for file in required_input_files if file not in self.input_files]
        if missing_files:
            raise ValueError(f"Missing required input files in configuration: {', '.join(missing_files)}")

        self.output_config = self.config.get("output", {})

        self.analysis_params = {**DEFAULT_ANALYSIS, **self.config.get("analysis", {})}
        self.cutoff = self.analysis_params["cutoff"]
        self.significant = self.analysis_params["significant"]
        self.merge_method = self.analysis_params["merge_method"]
        self.correction_method = self.analysis_params["correction_method"]
        self.num_threads = self.analysis_params["num_threads"]
        self.geneset_filter = self._parse_geneset_filter(self.analysis_params["geneset_filter"])

    @staticmethod
    def _parse_geneset_filter(value: Any) -> Optional[Tuple[Optional[float], Optional[float]]]:
        """Translate the TOML filter setting; false disables filtering."""
        if value is False:
            return None
        if not isinstance(value, list) or len(value) != 2:
            raise ValueError("analysis.geneset_filter must be a list of two bounds or false")
        return tuple(None if bound == UNBOUNDED else bound for bound in value)

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        output_dir = self.output_config.get("output_dir", self.output_config.get("directory", "results"))
        base_path = Path(output_dir)

        if subdir:
            return base_path / subdir

        return base_path

    def get_cytoscape_file_tag(self) -> Optional[str]:
        """Prefix for the Cytoscape files, inside the output directory, or None."""
        tag = self.output_config.get("cytoscape_file_tag")
        if not tag:
            return None
        return str(self.get_output_path() / tag)

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        with open(output_path, "wb") as f:
            tomli_w.dump(self.config, f)
