"""
Configuration for the regularized-log transform.

Parameters can be given programmatically (``RlogConfig(...)``), loaded from a
YAML or JSON file, or overridden per call with keyword arguments:

    # rlog.yaml
    rlog:
      fit_type: local
      n_jobs: 4

    >>> config = RlogConfig.from_file(Path("rlog.yaml"))
    >>> result = rlog(counts, size_factors, config=config, max_iter=200)

Keyword overrides always win over file values, which win over defaults.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict

import yaml

__all__ = ['RlogConfig', 'load_config']

_FIT_TYPES = ("parametric", "local", "mean")


@dataclass(frozen=True)
class RlogConfig:
    """
    Tuning parameters of the regularized-log transform.

    Attributes:
        fit_type: Mean-dispersion trend family ("parametric", "local", "mean")
        min_disp: Lower bound for dispersion values
        upper_quantile: Tail mass matched when estimating the prior variance
        intercept_lambda: Ridge penalty on the intercept (log2 scale); near
            zero so the gene's baseline is not shrunk
        max_iter: IRLS iteration cap per gene
        tol: Relative deviance change for IRLS convergence
        n_jobs: Parallel workers for per-gene fitting (joblib semantics)
        chunk_size: Genes per fitting chunk
        use_optim: Refit genes that fail IRLS with L-BFGS-B before giving up
    """
    fit_type: str = "parametric"
    min_disp: float = 1e-8
    upper_quantile: float = 0.05
    intercept_lambda: float = 1e-6
    max_iter: int = 100
    tol: float = 1e-8
    n_jobs: int = 1
    chunk_size: int = 2000
    use_optim: bool = True

    def __post_init__(self) -> None:
        errors = self.validate()
        if errors:
            raise ValueError("Invalid rlog configuration: " + "; ".join(errors))

    def validate(self) -> list[str]:
        """Return a list of problems with the configured values (empty if valid)."""
        errors: list[str] = []
        if self.fit_type not in _FIT_TYPES:
            errors.append(f"fit_type must be one of {_FIT_TYPES}, got {self.fit_type!r}")
        if not self.min_disp > 0:
            errors.append(f"min_disp must be positive, got {self.min_disp}")
        if not 0 < self.upper_quantile < 1:
            errors.append(f"upper_quantile must be in (0, 1), got {self.upper_quantile}")
        if not self.intercept_lambda > 0:
            errors.append(f"intercept_lambda must be positive, got {self.intercept_lambda}")
        if self.max_iter < 1:
            errors.append(f"max_iter must be >= 1, got {self.max_iter}")
        if not self.tol > 0:
            errors.append(f"tol must be positive, got {self.tol}")
        if self.n_jobs == 0:
            errors.append("n_jobs must be non-zero (use -1 for all cores)")
        if self.chunk_size < 1:
            errors.append(f"chunk_size must be >= 1, got {self.chunk_size}")
        return errors

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> RlogConfig:
        """
        Build a config from a mapping, rejecting unknown keys.

        A top-level ``rlog`` section is unwrapped if present.
        """
        if 'rlog' in values and isinstance(values['rlog'], dict):
            values = values['rlog']
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown rlog configuration keys: {unknown}")
        return cls(**values)

    @classmethod
    def from_file(cls, config_path: Path) -> RlogConfig:
        return cls.from_dict(load_config(Path(config_path)))

    def merged(self, **overrides: Any) -> RlogConfig:
        """Return a copy with ``overrides`` applied; None values are ignored."""
        overrides = {k: v for k, v in overrides.items() if v is not None}
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown rlog configuration keys: {unknown}")
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid
    """
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
                raise ValueError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return config
