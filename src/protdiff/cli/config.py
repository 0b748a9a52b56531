"""
Configuration file support for the protdiff CLI.

Supports YAML and JSON config files with CLI argument override.

Example (YAML):
    input: data/proteins.tsv
    design: data/design.tsv
    output: results/differential.tsv
    normalization:
      enabled: true
      input_scale: intensity
      lts_quantile: 0.9
    model:
      baseline: wt
      contrasts: ["double_ko:single_ko"]
      eb_moderation: true
    compute:
      n_workers: 4
"""

import json
from argparse import Namespace
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from protdiff.core.errors import ConfigurationError

__all__ = [
    'NormalizationConfig',
    'ModelConfig',
    'ComputeConfig',
    'AnalysisConfig',
    'load_config',
    'validate_config',
    'merge_config_with_args',
    'parse_contrast',
]


@dataclass
class NormalizationConfig:
    """VSN configuration."""
    enabled: bool = True
    input_scale: str = "intensity"
    output_scale: str = "glog2"
    max_iter: int = 1000
    tol: float = 1e-9
    lts_quantile: float = 0.9
    lts_iterations: int = 3

    def vsn_kwargs(self) -> Dict[str, Any]:
        kwargs = asdict(self)
        kwargs.pop("enabled")
        return kwargs


@dataclass
class ModelConfig:
    """Linear model and testing configuration."""
    baseline: Optional[str] = None
    levels: Optional[List[str]] = None
    coefficients: Optional[List[str]] = None
    contrasts: Optional[List[str]] = None
    eb_moderation: bool = True
    variance_floor: float = 1e-12
    fdr_method: str = "BH"
    conf_level: float = 0.95


@dataclass
class ComputeConfig:
    """Parallel fitting configuration."""
    n_workers: Optional[int] = None
    batch_size: int = 2048


@dataclass
class AnalysisConfig:
    """
    Complete configuration schema for the protdiff commands.

    Mirrors the CLI argument structure for consistency.
    """
    input: Optional[Path] = None
    design: Optional[Path] = None
    output: Optional[Path] = None
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    compute: ComputeConfig = field(default_factory=ComputeConfig)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "AnalysisConfig":
        """Build from a validated config dictionary (missing keys keep defaults)."""
        validate_config(config)
        paths = {
            key: Path(config[key])
            for key in _PATH_KEYS
            if config.get(key) is not None
        }
        return cls(
            normalization=NormalizationConfig(**config.get("normalization", {})),
            model=ModelConfig(**config.get("model", {})),
            compute=ComputeConfig(**config.get("compute", {})),
            **paths,
        )


_PATH_KEYS = ("input", "design", "output")

_SECTION_FIELDS = {
    "normalization": set(NormalizationConfig.__dataclass_fields__),
    "model": set(ModelConfig.__dataclass_fields__),
    "compute": set(ComputeConfig.__dataclass_fields__),
}

# (section, key) -> argparse dest
_ARG_MAPPING = {
    (None, "input"): "input",
    (None, "design"): "design",
    (None, "output"): "output",
    ("normalization", "enabled"): "normalize",
    ("normalization", "input_scale"): "input_scale",
    ("normalization", "output_scale"): "output_scale",
    ("normalization", "max_iter"): "max_iter",
    ("normalization", "tol"): "tol",
    ("normalization", "lts_quantile"): "lts_quantile",
    ("normalization", "lts_iterations"): "lts_iterations",
    ("model", "baseline"): "baseline",
    ("model", "levels"): "levels",
    ("model", "coefficients"): "coefficient",
    ("model", "contrasts"): "contrast",
    ("model", "eb_moderation"): "eb_moderation",
    ("model", "variance_floor"): "variance_floor",
    ("model", "fdr_method"): "fdr_method",
    ("model", "conf_level"): "conf_level",
    ("compute", "n_workers"): "workers",
    ("compute", "batch_size"): "batch_size",
}

# Option spellings whose dest differs from the option name
_OPTION_DESTS = {
    "no_normalize": "normalize",
    "no_eb": "eb_moderation",
    "i": "input",
    "d": "design",
    "o": "output",
    "c": "config",
}


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If file format is unsupported or invalid

    Examples:
        >>> config = load_config(Path("analysis.yaml"))
        >>> print(config['model']['baseline'])
        wt
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ConfigurationError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file: {e}") from e

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ConfigurationError("Config file must contain a dictionary/mapping at top level")

    return config


def _explicit_dests(cli_args: Optional[List[str]]) -> set:
    """argparse dests the user spelled out on the command line."""
    explicit = set()
    for arg in cli_args or []:
        if not arg.startswith('-') or arg == '-':
            continue
        name = arg.lstrip('-').split('=', 1)[0].replace('-', '_')
        explicit.add(_OPTION_DESTS.get(name, name))
    return explicit


def _merge_value(cli_value: Any, config_value: Any, was_explicitly_set: bool) -> Any:
    """
    Merge a single config value with CLI argument.

    Rules:
    - CLI args ALWAYS override config if explicitly set
    - If CLI arg not set, use config value
    - If neither set, keep CLI default
    """
    if was_explicitly_set:
        return cli_value
    if config_value is not None:
        return config_value
    return cli_value


def merge_config_with_args(
    config: Dict[str, Any],
    args: Namespace,
    cli_args: Optional[List[str]] = None,
) -> Namespace:
    """
    Merge config file values with CLI arguments.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments
    2. Config file values
    3. CLI argument defaults

    Keys whose argparse dest does not exist on ``args`` (e.g. model settings
    for the normalize command) are ignored.

    Parameters:
        config: Configuration dictionary from load_config()
        args: Parsed CLI arguments (argparse.Namespace)
        cli_args: Raw CLI arguments list (for detecting explicit values).
            If None, assumes all args are defaults

    Returns:
        New Namespace with merged values

    Examples:
        >>> config = load_config(Path("analysis.yaml"))
        >>> args = parser.parse_args(["--input", "data.tsv"])
        >>> merged = merge_config_with_args(config, args, ["--input", "data.tsv"])
        >>> # merged.input from CLI, merged.baseline from config
    """
    explicit = _explicit_dests(cli_args)
    merged = Namespace(**vars(args))

    for (section, key), dest in _ARG_MAPPING.items():
        if not hasattr(merged, dest):
            continue
        source = config if section is None else config.get(section) or {}
        if key not in source:
            continue

        value = source[key]
        if key in _PATH_KEYS and value is not None:
            value = Path(value)

        setattr(merged, dest, _merge_value(getattr(merged, dest), value, dest in explicit))

    return merged


def _check_number(value: Any, name: str, low: float, high: float,
                  low_open: bool = True, high_open: bool = True, integer: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number, got: {value!r}")
    if integer and not isinstance(value, int):
        raise ConfigurationError(f"{name} must be an integer, got: {value!r}")
    too_low = value <= low if low_open else value < low
    too_high = value >= high if high_open else value > high
    if too_low or too_high:
        lb = "(" if low_open else "["
        rb = ")" if high_open else "]"
        raise ConfigurationError(f"{name} must be in {lb}{low}, {high}{rb}, got: {value}")


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration structure and values.

    Performs basic validation:
    - No unknown sections or keys (catches typos)
    - Valid scale and correction method choices
    - Numeric values within their ranges

    Parameters:
        config: Configuration dictionary

    Raises:
        ConfigurationError: If configuration is invalid
    """
    unknown = sorted(set(config) - set(_PATH_KEYS) - set(_SECTION_FIELDS))
    if unknown:
        raise ConfigurationError(f"Unknown config key(s): {unknown}")

    for section, allowed in _SECTION_FIELDS.items():
        values = config.get(section)
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ConfigurationError(f"Config section '{section}' must be a mapping")
        unknown = sorted(set(values) - allowed)
        if unknown:
            raise ConfigurationError(
                f"Unknown key(s) in '{section}': {unknown}. Allowed: {sorted(allowed)}"
            )

    norm = config.get("normalization") or {}
    if norm.get("input_scale", "intensity") not in ("intensity", "log2"):
        raise ConfigurationError(
            f"Invalid input_scale '{norm['input_scale']}'. Choose from: intensity, log2"
        )
    if norm.get("output_scale", "glog2") not in ("glog2", "arcsinh"):
        raise ConfigurationError(
            f"Invalid output_scale '{norm['output_scale']}'. Choose from: glog2, arcsinh"
        )
    if "max_iter" in norm:
        _check_number(norm["max_iter"], "normalization.max_iter", 1, float("inf"),
                      low_open=False, integer=True)
    if "tol" in norm:
        _check_number(norm["tol"], "normalization.tol", 0, 1)
    if "lts_quantile" in norm:
        _check_number(norm["lts_quantile"], "normalization.lts_quantile", 0.5, 1,
                      low_open=False, high_open=False)
    if "lts_iterations" in norm:
        _check_number(norm["lts_iterations"], "normalization.lts_iterations", 1, float("inf"),
                      low_open=False, integer=True)

    model = config.get("model") or {}
    valid_methods = ["BH", "BY", "bonferroni"]
    if model.get("fdr_method", "BH") not in valid_methods:
        raise ConfigurationError(
            f"Invalid fdr_method '{model['fdr_method']}'. "
            f"Choose from: {', '.join(valid_methods)}"
        )
    if "variance_floor" in model:
        _check_number(model["variance_floor"], "model.variance_floor", 0, float("inf"))
    if "conf_level" in model:
        _check_number(model["conf_level"], "model.conf_level", 0, 1)
    for key in ("levels", "coefficients", "contrasts"):
        value = model.get(key)
        if value is not None and not (
            isinstance(value, list) and all(isinstance(v, str) for v in value)
        ):
            raise ConfigurationError(f"model.{key} must be a list of strings, got: {value!r}")
    for contrast in model.get("contrasts") or []:
        parse_contrast(contrast)

    compute = config.get("compute") or {}
    if compute.get("n_workers") is not None:
        _check_number(compute["n_workers"], "compute.n_workers", 1, float("inf"),
                      low_open=False, integer=True)
    if "batch_size" in compute:
        _check_number(compute["batch_size"], "compute.batch_size", 1, float("inf"),
                      low_open=False, integer=True)


def parse_contrast(text: str) -> tuple:
    """Parse "numerator:denominator" into a (numerator, denominator) pair."""
    parts = [p.strip() for p in text.split(":")]
    if len(parts) != 2 or not all(parts):
        raise ConfigurationError(
            f"Contrast '{text}' must have the form NUMERATOR:DENOMINATOR"
        )
    return parts[0], parts[1]
