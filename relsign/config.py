"""
relsign configuration.

Configuration sources (in order of precedence):
    1. Command-line overrides
    2. Environment variables (RELSIGN_*)
    3. Config file (--config, else ./relsign.yaml when present)
    4. Default values

File layout::

    signing:
      codesign_identity: "Developer ID Application: Example Corp"
      gpg_identity: "release@example.com"
      pkcs12_path: "keys/release.p12"
      certificate_path: "certificates/release.cer"
      gpg_public_key_path: "certificates/release.gpg.key"
      timestamp_url: "http://timestamp.digicert.com"
    release:
      plan_path: "plans/release.plan.yaml"
      manifest_name: "SHA256SUMS"
      source_tarball: "source/app-1.0.0.tar.gz"
    tools:
      codesign: "codesign"
      gpg: "gpg"
      osslsigncode: "osslsigncode"
    observability:
      log_level: "info"
      log_format: "text"

Relative paths in the file are resolved against the file's directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar, Union

import yaml

from relsign.errors import ConfigError

T = TypeVar("T")

DEFAULT_CONFIG_FILE = Path("relsign.yaml")

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")
LOG_FORMATS = ("text", "json")


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and a command-line override that beats the environment.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    is_path: bool = False
    _value: Optional[T] = field(default=None, repr=False)
    _override: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self._override is not None:
            return self._override

        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        self._check(value)
        self._value = value

    def override(self, value: T) -> None:
        self._check(value)
        self._override = value

    def _check(self, value: T) -> None:
        if self.validator and not self.validator(value):
            raise ConfigError(f"Invalid value for config: {value!r}")

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        else:
            return value  # type: ignore


def _str(default: str, env_var: str, description: str, **kwargs: Any) -> ConfigValue[str]:
    return ConfigValue(default=default, env_var=env_var, description=description, **kwargs)


@dataclass
class SigningConfig:
    """Identities and trust material for the three signer backends."""
    codesign_identity: ConfigValue[str] = field(default_factory=lambda: _str(
        "", "RELSIGN_CODESIGN_IDENTITY", "codesign identity (Keychain common name)",
    ))
    gpg_identity: ConfigValue[str] = field(default_factory=lambda: _str(
        "", "RELSIGN_GPG_IDENTITY", "GPG key fingerprint, email or name",
    ))
    pkcs12_path: ConfigValue[str] = field(default_factory=lambda: _str(
        "", "RELSIGN_PKCS12", "PKCS#12 private key container for osslsigncode", is_path=True,
    ))
    certificate_path: ConfigValue[str] = field(default_factory=lambda: _str(
        "", "RELSIGN_CERTIFICATE", "signing certificate (DER or PEM)", is_path=True,
    ))
    gpg_public_key_path: ConfigValue[str] = field(default_factory=lambda: _str(
        "", "RELSIGN_GPG_PUBLIC_KEY", "exported GPG public key used for verification", is_path=True,
    ))
    timestamp_url: ConfigValue[str] = field(default_factory=lambda: _str(
        "http://timestamp.digicert.com", "RELSIGN_TIMESTAMP_URL", "RFC 3161 timestamp authority",
        validator=lambda x: x.startswith(("http://", "https://")),
    ))


@dataclass
class ReleaseConfig:
    """What to sign and what to emit."""
    plan_path: ConfigValue[str] = field(default_factory=lambda: _str(
        "", "RELSIGN_PLAN", "YAML sign plan", is_path=True,
    ))
    manifest_name: ConfigValue[str] = field(default_factory=lambda: _str(
        "SHA256SUMS", "RELSIGN_MANIFEST_NAME", "digest manifest file name",
        validator=lambda x: bool(x) and "/" not in x,
    ))
    source_tarball: ConfigValue[str] = field(default_factory=lambda: _str(
        "", "RELSIGN_SOURCE_TARBALL", "destination-relative source tarball to detach-sign",
    ))


@dataclass
class ToolsConfig:
    """External executables."""
    codesign: ConfigValue[str] = field(default_factory=lambda: _str("codesign", "RELSIGN_CODESIGN", "codesign executable"))
    gpg: ConfigValue[str] = field(default_factory=lambda: _str("gpg", "RELSIGN_GPG", "gpg executable"))
    osslsigncode: ConfigValue[str] = field(default_factory=lambda: _str(
        "osslsigncode", "RELSIGN_OSSLSIGNCODE", "osslsigncode executable",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: _str(
        "info", "RELSIGN_LOG_LEVEL", "Log level (debug, info, warning, error)",
        validator=lambda x: x in LOG_LEVELS,
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: _str(
        "text", "RELSIGN_LOG_FORMAT", "Log format (json, text)",
        validator=lambda x: x in LOG_FORMATS,
    ))


@dataclass
class RelsignConfig:
    """Root configuration."""
    signing: SigningConfig = field(default_factory=SigningConfig)
    release: ReleaseConfig = field(default_factory=ReleaseConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: top level must be a mapping")
        self._apply_dict(data, base_dir=path.resolve().parent, source=str(path))

    def _apply_dict(self, data: Mapping[str, Any], *, base_dir: Path, source: str) -> None:
        for section_name, values in data.items():
            section = getattr(self, str(section_name), None)
            if section is None or not hasattr(section, "__dataclass_fields__"):
                raise ConfigError(f"{source}: unknown section '{section_name}'")
            if not isinstance(values, dict):
                raise ConfigError(f"{source}: section '{section_name}' must be a mapping")
            for key, value in values.items():
                attr = getattr(section, str(key), None)
                if not isinstance(attr, ConfigValue):
                    raise ConfigError(f"{source}: unknown key '{section_name}.{key}'")
                if value is None:
                    continue
                value = str(value)
                if attr.is_path and value and not Path(value).is_absolute():
                    value = str(base_dir / value)
                attr.set(value)

    def apply_overrides(self, overrides: Mapping[str, Any]) -> None:
        """Apply ``{"section.key": value}`` overrides; None values are skipped."""
        for dotted, value in overrides.items():
            if value is None:
                continue
            self.value(dotted).override(value)

    def value(self, dotted: str) -> ConfigValue[Any]:
        section_name, _, key = dotted.partition(".")
        section = getattr(self, section_name, None)
        attr = getattr(section, key, None) if section is not None else None
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {dotted}")
        return attr

    def get(self, dotted: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("signing.gpg_identity")
        """
        return self.value(dotted).get()

    def optional_path(self, dotted: str) -> Optional[Path]:
        raw = self.get(dotted)
        return Path(raw) if raw else None

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []
        for dotted, cv in self._values():
            try:
                value = cv.get()
            except ValueError as e:
                errors.append(f"{dotted}: {e}")
                continue
            if cv.validator and not cv.validator(value):
                errors.append(f"{dotted}: validation failed for value {value!r}")
        return errors

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for dotted, cv in self._values():
            section, _, key = dotted.partition(".")
            out.setdefault(section, {})[key] = cv.get()
        return out

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    def _values(self) -> List[tuple]:
        found = []
        for section_name in self.__dataclass_fields__:
            section = getattr(self, section_name)
            for key in section.__dataclass_fields__:
                found.append((f"{section_name}.{key}", getattr(section, key)))
        return found


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> RelsignConfig:
    """Build the effective configuration for a run."""
    config = RelsignConfig()
    if path:
        config.load_from_file(path)
    elif DEFAULT_CONFIG_FILE.exists():
        config.load_from_file(DEFAULT_CONFIG_FILE)
    if overrides:
        config.apply_overrides(overrides)
    errors = config.validate()
    if errors:
        raise ConfigError("invalid configuration:\n  " + "\n  ".join(errors))
    return config
