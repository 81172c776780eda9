"""YAML configuration for the Folio service.

The file is optional. Every section and setting is optional, but anything
present must be known and well-typed: a bad file stops startup with all
problems listed at once.
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ConfigValidationError:
    """One problem found in the configuration file."""
    path: str
    message: str


class ConfigValidationException(Exception):
    """Raised when the configuration file cannot be used."""

    def __init__(self, errors: List[ConfigValidationError]):
        self.errors = errors
        lines = "\n".join(f"  {e.path or '<root>'}: {e.message}" for e in errors)
        super().__init__(f"Invalid configuration ({len(errors)} error(s)):\n{lines}")


@dataclass(frozen=True)
class Setting:
    """Type and bounds of one leaf setting."""
    kind: type
    default: Any = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    choices: Optional[Sequence[Any]] = None

    def check(self, value: Any) -> Optional[str]:
        """Problem with value, or None when it is acceptable."""
        # bool is an int subclass; reject it for numeric settings
        numeric = self.kind in (int, float)
        if numeric and isinstance(value, bool):
            return f"Expected {self.kind.__name__}, got bool"
        accepted = (int, float) if self.kind is float else self.kind
        if not isinstance(value, accepted):
            return f"Expected {self.kind.__name__}, got {type(value).__name__}"
        if numeric and self.minimum is not None and value < self.minimum:
            return f"{value} is below the minimum of {self.minimum}"
        if numeric and self.maximum is not None and value > self.maximum:
            return f"{value} is above the maximum of {self.maximum}"
        if self.choices is not None and value not in self.choices:
            return f"{value!r} is not one of {list(self.choices)}"
        return None


LENS_NAMES = (
    "asset", "account", "sub_portfolio", "asset_type", "asset_subtype",
    "geography", "size_tag", "factor_tag", "total",
)

# section -> setting -> Setting
CONFIG_SCHEMA: Dict[str, Dict[str, Setting]] = {
    "server": {
        "host": Setting(str, "0.0.0.0"),
        "port": Setting(int, 8000, minimum=1, maximum=65535),
        "debug": Setting(bool, False),
    },
    "logging": {
        "level": Setting(str, "INFO", choices=("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")),
        "format": Setting(str),
        "audit_dir": Setting(str),
    },
    "irr": {
        "max_newton_iterations": Setting(int, minimum=1, maximum=10000),
        "max_bisection_iterations": Setting(int, minimum=1, maximum=10000),
        "tolerance": Setting(float, minimum=0),
        "lower_bound": Setting(float, minimum=-0.9999, maximum=0),
        "upper_bound": Setting(float, minimum=0.01, maximum=1000),
        "fallback_guess": Setting(float, minimum=-0.99, maximum=100),
    },
    "performance": {
        "total_includes_income": Setting(bool, False),
        "default_lens": Setting(str, "asset", choices=LENS_NAMES),
    },
    "ledger": {
        "validate_after_write": Setting(bool, True),
    },
}


def validate_config(config: Any) -> List[ConfigValidationError]:
    """Check a parsed YAML document against CONFIG_SCHEMA."""
    if not isinstance(config, dict):
        return [ConfigValidationError("", f"Config must be a mapping, got {type(config).__name__}")]

    errors = []
    for section_name, section in config.items():
        settings = CONFIG_SCHEMA.get(section_name)
        if settings is None:
            errors.append(ConfigValidationError(section_name, f"Unknown section '{section_name}'"))
            continue
        if not isinstance(section, dict):
            errors.append(ConfigValidationError(
                section_name, f"Expected a mapping, got {type(section).__name__}"
            ))
            continue

        for name, value in section.items():
            path = f"{section_name}.{name}"
            setting = settings.get(name)
            if setting is None:
                errors.append(ConfigValidationError(path, f"Unknown configuration key '{name}'"))
                continue
            problem = setting.check(value)
            if problem:
                errors.append(ConfigValidationError(path, problem))
    return errors


class ConfigService:
    """Loads, validates and serves the configuration file."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: Config file. Defaults to $FOLIO_CONFIG, then
                config.yaml in the backend directory.
        """
        if config_path is None:
            backend_dir = Path(__file__).parent.parent.parent
            config_path = os.environ.get("FOLIO_CONFIG") or str(backend_dir / "config.yaml")

        self.config_path = config_path
        self._config: Dict[str, Dict[str, Any]] = {}

    def load_and_validate(self) -> Dict[str, Any]:
        """Read the file and replace the active configuration.

        A missing file means "all defaults"; an invalid one changes nothing.

        Raises:
            ConfigValidationException: On YAML syntax or schema errors
        """
        if not os.path.exists(self.config_path):
            logger.warning(f"No config file at {self.config_path}, using defaults")
            self._config = {}
            return self._config

        try:
            with open(self.config_path, "r") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigValidationException([ConfigValidationError("", f"Invalid YAML syntax: {e}")])

        config = {} if config is None else config
        errors = validate_config(config)
        if errors:
            raise ConfigValidationException(errors)

        self._config = config
        logger.info(f"Configuration loaded from {self.config_path}")
        return config

    def get(self, key: str, default: Any = None) -> Any:
        """Value of a "section.setting" key.

        Falls back to `default`, then to the schema default.
        """
        section_name, _, name = key.partition(".")
        section = self._config.get(section_name)
        if not name:
            return section if section is not None else default

        if isinstance(section, dict) and name in section:
            return section[name]
        if default is not None:
            return default
        setting = CONFIG_SCHEMA.get(section_name, {}).get(name)
        return setting.default if setting else None

    def irr_settings(self) -> Dict[str, Any]:
        """IRR solver keyword arguments present in the `irr` section."""
        return dict(self._config.get("irr") or {})


# Global config service instance
config_service = ConfigService()
