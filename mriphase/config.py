"""
Configuration for the phase processing pipeline.

Every public entry point takes one of the dataclasses below explicitly; the
module-level constants are the only process-wide defaults.

Handles:
- Loading YAML configuration files
- Merging user configs over the defaults
- Validation of section and key names
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np
import yaml

from .errors import ConfigurationError


DEFAULT_PHASE_OFFSET_SIGMA = (10.0, 10.0, 5.0)
DEFAULT_HOMOGENEITY_SIGMA_MM = 7.0
DEFAULT_MAX_ITERATIONS = 10
SUPPORTED_CONNECTIVITY = (6, 18, 26)


@dataclass
class NumericsConfig:
    """Substitution values for non-finite samples.

    ``None`` for an infinity means the largest (or smallest) representable
    value of the array dtype, which is what ``numpy.nan_to_num`` does.
    """
    nan: float = 0.0
    posinf: Optional[float] = None
    neginf: Optional[float] = None

    def clean(self, array):
        return np.nan_to_num(array, nan=self.nan, posinf=self.posinf, neginf=self.neginf)


@dataclass
class MaskConfig:
    threshold: Optional[float] = None
    box_size: int = 5
    low_threshold: float = 0.4
    high_threshold: float = 0.6
    max_hole_fraction: float = 1 / 20


@dataclass
class UnwrapConfig:
    connectivity: int = 6
    weights: str = 'romeo'
    correct_global: bool = False
    temporal: bool = True
    template: int = 1
    n_jobs: int = 1
    numerics: NumericsConfig = field(default_factory=NumericsConfig)

    def __post_init__(self):
        if self.connectivity not in SUPPORTED_CONNECTIVITY:
            raise ConfigurationError(
                f"connectivity must be one of {SUPPORTED_CONNECTIVITY}, got {self.connectivity}"
            )
        if self.weights not in ('romeo', 'phase', 'mag'):
            raise ConfigurationError(f"Unknown weights type: {self.weights}")
        if not isinstance(self.n_jobs, int) or self.n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be positive integer, got {self.n_jobs}")


@dataclass
class CombineConfig:
    echoes: Tuple[int, int] = (1, 2)
    sigma: Tuple[float, ...] = DEFAULT_PHASE_OFFSET_SIGMA
    bipolar_correction: bool = False

    def __post_init__(self):
        self.echoes = tuple(int(e) for e in self.echoes)
        self.sigma = tuple(float(s) for s in self.sigma)
        if len(self.echoes) != 2 or self.echoes[0] == self.echoes[1]:
            raise ConfigurationError(f"echoes must be two distinct echo numbers, got {self.echoes}")


@dataclass
class HomogeneityConfig:
    sigma_mm: Union[float, Tuple[float, float, float]] = DEFAULT_HOMOGENEITY_SIGMA_MM
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    tolerance: float = 0.01
    nboxes: int = 20
    strict: bool = False

    def __post_init__(self):
        if isinstance(self.sigma_mm, (list, tuple)):
            if len(self.sigma_mm) != 3:
                raise ConfigurationError(f"sigma_mm needs 1 or 3 values, got {self.sigma_mm}")
            self.sigma_mm = tuple(float(s) for s in self.sigma_mm)
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {self.max_iterations}")


@dataclass
class PipelineConfig:
    numerics: NumericsConfig = field(default_factory=NumericsConfig)
    mask: MaskConfig = field(default_factory=MaskConfig)
    unwrap: UnwrapConfig = field(default_factory=UnwrapConfig)
    combine: CombineConfig = field(default_factory=CombineConfig)
    homogeneity: HomogeneityConfig = field(default_factory=HomogeneityConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_SECTIONS = {
    'numerics': NumericsConfig,
    'mask': MaskConfig,
    'unwrap': UnwrapConfig,
    'combine': CombineConfig,
    'homogeneity': HomogeneityConfig,
}


def load_yaml(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML configuration file.

    Raises
    ------
    ConfigurationError
        If file doesn't exist or YAML is invalid
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise ConfigurationError(f"Configuration file not found: {file_path}")

    try:
        with open(file_path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {file_path}: {e}")

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"Top level of {file_path} must be a mapping")
    return config


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge two configuration dictionaries.

    Parameters
    ----------
    base : dict
        Base configuration (defaults)
    override : dict
        Override configuration (user supplied)

    Returns
    -------
    dict
        Merged configuration (override takes precedence)
    """
    merged = base.copy()

    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def _build_section(name, cls, values):
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in section '{name}': {sorted(unknown)}")
    if 'numerics' in values and isinstance(values['numerics'], dict):
        values = dict(values, numerics=_build_section(f"{name}.numerics", NumericsConfig, values['numerics']))
    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid values in section '{name}': {e}")


def config_from_dict(config: Dict[str, Any]) -> PipelineConfig:
    """Build a PipelineConfig from a (possibly partial) nested dictionary."""
    unknown = set(config) - set(_SECTIONS)
    if unknown:
        raise ConfigurationError(f"Unknown configuration sections: {sorted(unknown)}")

    merged = merge_configs(PipelineConfig().to_dict(), config)
    # top-level numerics also apply to the unwrapper unless it has its own
    if isinstance(config.get('numerics'), dict) and 'numerics' not in (config.get('unwrap') or {}):
        merged['unwrap'] = dict(merged['unwrap'], numerics=merged['numerics'])
    sections = {}
    for name, cls in _SECTIONS.items():
        values = merged[name]
        if not isinstance(values, dict):
            raise ConfigurationError(f"Section '{name}' must be a mapping")
        sections[name] = _build_section(name, cls, values)
    return PipelineConfig(**sections)


def load_config(config_path: Optional[Path] = None) -> PipelineConfig:
    """
    Load a YAML file and merge it over the defaults.

    Returns the default configuration when ``config_path`` is None.
    """
    if config_path is None:
        return PipelineConfig()
    return config_from_dict(load_yaml(Path(config_path)))
