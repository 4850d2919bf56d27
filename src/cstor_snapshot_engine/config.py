from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping
import os
import re

import yaml

from .errors import ConfigurationError

DEFAULT_OPENEBS_NAMESPACE = "openebs"
DEFAULT_RECEIVER_PORT = 9000
SNAPSHOT_LOCATION_KIND = "VolumeSnapshotLocation"

_DURATION_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


@dataclass(frozen=True)
class EngineConfig:
    openebs_namespace: str = os.getenv("CSTOR_ENGINE_OPENEBS_NAMESPACE", DEFAULT_OPENEBS_NAMESPACE)
    maya_address: str | None = os.getenv("CSTOR_ENGINE_MAYA_ADDRESS") or None
    server_address: str | None = os.getenv("CSTOR_ENGINE_SERVER_ADDRESS") or None
    rest_api_timeout_seconds: float = float(os.getenv("CSTOR_ENGINE_REST_API_TIMEOUT_SECONDS", "60"))
    status_poll_interval_seconds: float = float(os.getenv("CSTOR_ENGINE_STATUS_POLL_INTERVAL_SECONDS", "5"))
    confirmation_wait_seconds: float = float(os.getenv("CSTOR_ENGINE_CONFIRMATION_WAIT_SECONDS", "10"))
    operation_timeout_seconds: float | None = None
    provision_timeout_seconds: float = float(os.getenv("CSTOR_ENGINE_PROVISION_TIMEOUT_SECONDS", "300"))
    prefix: str = ""
    backup_path_prefix: str = ""
    log_level: str = os.getenv("CSTOR_ENGINE_LOG_LEVEL", "INFO")

    def __post_init__(self) -> None:
        if self.rest_api_timeout_seconds <= 0:
            raise ConfigurationError("rest API timeout must be positive")
        if self.status_poll_interval_seconds <= 0:
            raise ConfigurationError("status poll interval must be positive")
        if self.confirmation_wait_seconds < 0:
            raise ConfigurationError("confirmation wait must be >= 0")
        if self.operation_timeout_seconds is not None and self.operation_timeout_seconds <= 0:
            raise ConfigurationError("operation timeout must be positive when set")
        if not self.openebs_namespace.strip():
            raise ConfigurationError("OpenEBS namespace must not be empty")

    @classmethod
    def from_plugin_config(
        cls,
        values: Mapping[str, Any],
        *,
        base: EngineConfig | None = None,
    ) -> EngineConfig:
        """Overlay the ``spec.config`` map of a VolumeSnapshotLocation onto ``base``."""

        config = base or cls()
        overrides: dict[str, Any] = {}

        namespace = _optional_string(values, "namespace")
        if namespace:
            overrides["openebs_namespace"] = namespace
        for key, field_name in (
            ("mayaAddress", "maya_address"),
            ("serverAddress", "server_address"),
            ("prefix", "prefix"),
            ("backupPathPrefix", "backup_path_prefix"),
        ):
            value = _optional_string(values, key)
            if value:
                overrides[field_name] = value
        for key, field_name in (
            ("restApiTimeout", "rest_api_timeout_seconds"),
            ("statusPollInterval", "status_poll_interval_seconds"),
            ("confirmationWait", "confirmation_wait_seconds"),
            ("operationTimeout", "operation_timeout_seconds"),
            ("provisionTimeout", "provision_timeout_seconds"),
        ):
            value = _optional_string(values, key)
            if value:
                overrides[field_name] = parse_duration(value, key=key)

        return replace(config, **overrides)


def load_snapshot_location(path: Path, *, base: EngineConfig | None = None) -> EngineConfig:
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as error:
        raise ConfigurationError(f"unable to read snapshot location manifest {path}: {error}") from error

    if not isinstance(document, dict) or document.get("kind") != SNAPSHOT_LOCATION_KIND:
        raise ConfigurationError(f"{path} is not a {SNAPSHOT_LOCATION_KIND} manifest")

    spec = document.get("spec") or {}
    plugin_config = spec.get("config") or {}
    if not isinstance(plugin_config, dict):
        raise ConfigurationError(f"{path} has a non-mapping spec.config")
    return EngineConfig.from_plugin_config(plugin_config, base=base)


def parse_duration(value: str, *, key: str = "duration") -> float:
    """Parse a Go-style duration such as ``60s``, ``2m`` or ``1m30s`` into seconds.

    A bare number is read as seconds.
    """

    text = value.strip()
    if not text:
        raise ConfigurationError(f"{key} must not be empty")
    try:
        return float(text)
    except ValueError:
        pass

    position = 0
    total = 0.0
    for match in _DURATION_PATTERN.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text) or position == 0:
        raise ConfigurationError(f"{key} has invalid duration {value!r}")
    return total


def _optional_string(values: Mapping[str, Any], key: str) -> str | None:
    value = values.get(key)
    if value is None:
        return None
    return str(value).strip()
