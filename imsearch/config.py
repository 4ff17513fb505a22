"""
Search configuration.

All tunables live in a single frozen SearchConfig that is built once at
startup and handed to every component. Defaults can be overridden through
environment variables (IMSEARCH_<OPTION>), and explicit keyword overrides
(e.g. parsed command-line flags) take precedence over the environment.
"""

import os
import logging
from dataclasses import dataclass, asdict, fields, replace
from typing import Any, Dict, Optional

from .errors import ConfigInvalid

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("table", "json")

# Packed LSH keys reserve 40 bits for the descriptor offset
MAX_KEY_SIZE = 24


def default_db_path() -> str:
    """Database location: $IMSEARCH_DB_PATH or ~/.config/imsearch/imsearch.db."""
    env_path = os.environ.get("IMSEARCH_DB_PATH")
    if env_path:
        return env_path
    return os.path.join(os.path.expanduser("~"), ".config", "imsearch", "imsearch.db")


@dataclass(frozen=True)
class SearchConfig:
    """Every option recognised by the extractor, store, index and engine."""

    db_path: str = ""

    # Feature extraction
    orb_nfeatures: int = 500
    orb_scale_factor: float = 1.2
    orb_nlevels: int = 8
    orb_ini_th_fast: int = 20
    orb_min_th_fast: int = 7

    # Multi-probe LSH
    flann_table_number: int = 6
    flann_key_size: int = 12
    flann_probe_level: int = 1
    flann_checks: int = 32
    flann_eps: float = 0.0

    # Search
    batch_size: int = 5_000_000
    output_count: int = 10
    output_format: str = "table"
    knn_k: int = 3
    workers: int = 1

    def __post_init__(self):
        if not self.db_path:
            object.__setattr__(self, "db_path", default_db_path())

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None,
                 **overrides: Any) -> "SearchConfig":
        """
        Build a configuration from IMSEARCH_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ.
            **overrides: Explicit values; None entries are ignored so parsed
                CLI flags that were not given fall through to the env.

        Returns:
            A validated SearchConfig.

        Raises:
            ConfigInvalid: If a value cannot be parsed or is out of range.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        for f in fields(cls):
            raw = environ.get(f"IMSEARCH_{f.name.upper()}")
            if raw is None:
                continue
            try:
                values[f.name] = _coerce(f.type, raw)
            except ValueError:
                raise ConfigInvalid(
                    f"IMSEARCH_{f.name.upper()}={raw!r} is not a valid {_type_name(f.type)}"
                ) from None

        values.update({k: v for k, v in overrides.items() if v is not None})
        unknown = set(values) - {f.name for f in fields(cls)}
        if unknown:
            raise ConfigInvalid(f"Unknown options: {', '.join(sorted(unknown))}")

        config = cls(**values)
        config.validate()
        logger.debug(f"Configuration: {config.to_dict()}")
        return config

    def with_overrides(self, **overrides: Any) -> "SearchConfig":
        """Return a validated copy with some options replaced."""
        config = replace(self, **{k: v for k, v in overrides.items() if v is not None})
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ConfigInvalid on the first out-of-range option."""
        if self.orb_nfeatures <= 0:
            raise ConfigInvalid("orb-nfeatures must be positive")
        if self.orb_scale_factor <= 1.0:
            raise ConfigInvalid("orb-scale-factor must be greater than 1")
        if self.orb_nlevels <= 0:
            raise ConfigInvalid("orb-nlevels must be positive")
        if self.orb_min_th_fast <= 0 or self.orb_ini_th_fast <= 0:
            raise ConfigInvalid("FAST thresholds must be positive")
        if self.orb_min_th_fast > self.orb_ini_th_fast:
            raise ConfigInvalid("orb-min-th-fast must not exceed orb-ini-th-fast")
        if self.flann_table_number <= 0:
            raise ConfigInvalid("flann-table-number must be positive")
        if not 1 <= self.flann_key_size <= MAX_KEY_SIZE:
            raise ConfigInvalid(f"flann-key-size must be between 1 and {MAX_KEY_SIZE}")
        if self.flann_probe_level < 0:
            raise ConfigInvalid("flann-probe-level must not be negative")
        if self.flann_probe_level > self.flann_key_size:
            raise ConfigInvalid("flann-probe-level must not exceed flann-key-size")
        if self.flann_eps < 0:
            raise ConfigInvalid("flann-eps must not be negative")
        if self.batch_size <= 0:
            raise ConfigInvalid("batch-size must be positive")
        if self.output_count <= 0:
            raise ConfigInvalid("output-count must be positive")
        if self.output_format not in OUTPUT_FORMATS:
            raise ConfigInvalid(
                f"output-format must be one of {', '.join(OUTPUT_FORMATS)}"
            )
        if self.knn_k <= 0:
            raise ConfigInvalid("knn-k must be positive")
        if self.workers <= 0:
            raise ConfigInvalid("workers must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _type_name(annotation) -> str:
    return annotation if isinstance(annotation, str) else annotation.__name__


def _coerce(annotation, raw: str):
    name = _type_name(annotation)
    if name == "int":
        return int(raw)
    if name == "float":
        return float(raw)
    return raw
