"""
Configuration loading for the validator.

The project config lives in ``hugo-validator.yaml`` at the site root. Keys use
the camelCase names of the original JavaScript config, e.g.::

    siteUrl: https://example.com
    skipExternalDomains:
      archive.org: rate-limited
    htmlValidation:
      exclude:
        - public/legacy/**
"""
from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml

from hugo_validator.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAMES: Tuple[str, ...] = ("hugo-validator.yaml", "hugo-validator.yml")

HUGO_CONFIG_FILES: Tuple[str, ...] = (
    "hugo.yaml", "hugo.toml", "hugo.json",
    "config.yaml", "config.toml", "config.json",
)


@dataclass(frozen=True, slots=True)
class HtmlValidationConfig:
    """Which generated files the HTML validation stage looks at."""
    pattern: str = "public/**/*.html"
    exclude: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True, slots=True)
class HugoConfig:
    """Hugo config file found in a project and its baseURL."""
    config_file: str
    base_url: str


@dataclass(frozen=True, slots=True)
class ValidatorConfig:
    """Immutable validator settings. Build with ``merge_config``."""
    site_url: str = "https://example.com"
    ports_to_kill: Tuple[int, ...] = (1313, 3000)
    skip_external_domains: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    css_pattern: str = "themes/*/assets/scss/**/*.scss"
    html_validation: HtmlValidationConfig = field(default_factory=HtmlValidationConfig)
    skip_paths: Tuple[str, ...] = ("/rss.xml", "/sitemap.xml", "/robots.txt")
    report_retention: int = 8
    report_filename: str = "VALIDATION-REPORT.md"
    reports_dir: str = ".validation-reports"
    test_server_port: int = 3000
    cache_file: str = ".hugo-validator-cache.json"

    @property
    def test_base_url(self) -> str:
        """URL of the local test server the link crawl runs against."""
        return f"http://localhost:{self.test_server_port}"


# YAML key -> dataclass field
_FIELD_NAMES: Dict[str, str] = {
    "siteUrl": "site_url",
    "portsToKill": "ports_to_kill",
    "skipExternalDomains": "skip_external_domains",
    "cssPattern": "css_pattern",
    "htmlValidation": "html_validation",
    "skipPaths": "skip_paths",
    "reportRetention": "report_retention",
    "reportFilename": "report_filename",
    "reportsDir": "reports_dir",
    "testServerPort": "test_server_port",
    "cacheFile": "cache_file",
}


def default_config() -> ValidatorConfig:
    """Return the built-in defaults."""
    return ValidatorConfig()


def _expect_str(key: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _expect_int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer, got {type(value).__name__}")
    return value


def _expect_list(key: str, value: Any, item_type: type) -> Tuple[Any, ...]:
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{key} must be a list, got {type(value).__name__}")
    for item in value:
        if isinstance(item, bool) or not isinstance(item, item_type):
            raise ConfigError(f"{key} entries must be {item_type.__name__}, got {item!r}")
    return tuple(value)


def _merge_skip_domains(current: Mapping[str, str], value: Any) -> Mapping[str, str]:
    if not isinstance(value, Mapping):
        raise ConfigError("skipExternalDomains must be a mapping of domain -> reason")
    merged = dict(current)
    for domain, reason in value.items():
        merged[str(domain)] = str(reason)
    return MappingProxyType(merged)


def _merge_html_validation(current: HtmlValidationConfig, value: Any) -> HtmlValidationConfig:
    if not isinstance(value, Mapping):
        raise ConfigError("htmlValidation must be a mapping")
    updated = current
    for key, item in value.items():
        if key == "pattern":
            updated = replace(updated, pattern=_expect_str("htmlValidation.pattern", item))
        elif key == "exclude":
            exclude = None if item is None else _expect_list("htmlValidation.exclude", item, str)
            updated = replace(updated, exclude=exclude)
        else:
            logger.warning("Ignoring unknown config key: htmlValidation.%s", key)
    return updated


def merge_config(base: ValidatorConfig, overrides: Mapping[str, Any]) -> ValidatorConfig:
    """
    Overlay user settings onto ``base``.

    Mapping-valued settings (``htmlValidation``, ``skipExternalDomains``) are
    merged one level deep. Lists and scalars replace the base value.

    Raises:
        ConfigError: if a value has the wrong type.
    """
    changes: Dict[str, Any] = {}
    for key, value in overrides.items():
        name = _FIELD_NAMES.get(key)
        if name is None:
            logger.warning("Ignoring unknown config key: %s", key)
            continue

        if name == "skip_external_domains":
            changes[name] = _merge_skip_domains(base.skip_external_domains, value)
        elif name == "html_validation":
            changes[name] = _merge_html_validation(base.html_validation, value)
        elif name == "ports_to_kill":
            changes[name] = _expect_list(key, value, int)
        elif name == "skip_paths":
            changes[name] = _expect_list(key, value, str)
        elif name in ("report_retention", "test_server_port"):
            changes[name] = _expect_int(key, value)
        else:
            changes[name] = _expect_str(key, value)

    return replace(base, **changes)


def find_config_file(project_root: Path) -> Optional[Path]:
    """Return the first config file present in ``project_root``."""
    for name in CONFIG_FILENAMES:
        candidate = project_root / name
        if candidate.is_file():
            return candidate
    return None


def load_config(project_root: Union[str, Path] = ".") -> ValidatorConfig:
    """
    Load the project config, falling back to defaults.

    A missing file is a warning; an unreadable or invalid one is logged as an
    error. Neither stops the pipeline. When ``siteUrl`` is not set, the
    ``baseURL`` of the Hugo config is used.
    """
    root = Path(project_root)
    overrides = _read_overrides(root)

    try:
        config = merge_config(default_config(), overrides)
    except ConfigError as e:
        logger.error("Error loading %s: %s", CONFIG_FILENAMES[0], e)
        overrides, config = {}, default_config()

    if "siteUrl" not in overrides:
        hugo = detect_hugo_config(root)
        if hugo is not None:
            config = replace(config, site_url=hugo.base_url)
    return config


def _read_overrides(root: Path) -> Mapping[str, Any]:
    path = find_config_file(root)
    if path is None:
        logger.warning("%s not found, using defaults", CONFIG_FILENAMES[0])
        return {}

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Error loading %s: %s", path.name, e)
        return {}

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        logger.error("Error loading %s: top level must be a mapping", path.name)
        return {}
    return data


def _read_base_url(path: Path) -> Optional[str]:
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()

    if suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text)
    elif suffix == ".toml":
        data = tomllib.loads(text)
    else:
        data = json.loads(text)

    if not isinstance(data, dict):
        return None
    base_url = data.get("baseURL") or data.get("baseUrl")
    return base_url if isinstance(base_url, str) and base_url else None


def detect_hugo_config(project_root: Union[str, Path] = ".") -> Optional[HugoConfig]:
    """Find the Hugo config file and extract its baseURL, if any."""
    root = Path(project_root)
    for name in HUGO_CONFIG_FILES:
        path = root / name
        if not path.is_file():
            continue
        try:
            base_url = _read_base_url(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            # tomllib.TOMLDecodeError and json.JSONDecodeError are ValueErrors
            logger.debug("Could not parse %s: %s", name, e)
            continue
        if base_url:
            return HugoConfig(config_file=name, base_url=base_url)
    return None
