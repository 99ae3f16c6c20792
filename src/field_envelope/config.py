"""
Configuration for field envelope encryption.

This module provides:
- FieldPolicy: Per-field encrypt/decrypt/hash flags
- FieldEncryptionConfig: Declarative per-model field configuration (JSON)
- FieldFailurePolicy: What an object operation does when one field fails
- Settings: Runtime settings loaded from the environment / .env file

Field configuration layouts accepted per model::

    {"User": {"email": {"encrypt": true, "decrypt": true, "shouldHash": true}}}

    {"User": {"Encrypt": [{"key": "email", "shouldHash": true}],
              "Decrypt": [{"key": "email"}]}}

Either may be wrapped in a top-level ``{"encryptedFields": {...}}``.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from dotenv import load_dotenv

from .errors import ConfigurationError, ErrorCode

DEFAULT_CONFIG_PATH = "config/encryption.json"
DEFAULT_CACHE_MAX_ENTRIES = 10000


@dataclass(frozen=True)
class FieldPolicy:
    """Encryption flags for one field."""

    name: str
    encrypt: bool = True
    decrypt: bool = True
    should_hash: bool = False


@dataclass(frozen=True)
class ModelConfig:
    """Field policies for one model."""

    model_name: str
    fields: Dict[str, FieldPolicy] = field(default_factory=dict)

    @property
    def encrypt_fields(self) -> List[FieldPolicy]:
        return [p for p in self.fields.values() if p.encrypt]

    @property
    def decrypt_fields(self) -> List[FieldPolicy]:
        return [p for p in self.fields.values() if p.decrypt]


def _flag(spec: Mapping[str, Any], *names: str, default: bool) -> bool:
    for name in names:
        if name in spec:
            value = spec[name]
            if not isinstance(value, bool):
                raise ConfigurationError(
                    f"Field flag {name} must be a boolean, got {value!r}",
                    ErrorCode.INVALID_CONFIG,
                )
            return value
    return default


def _parse_list_layout(model_name: str, raw: Mapping[str, Any]) -> ModelConfig:
    encrypt_specs = raw.get("Encrypt") or []
    decrypt_specs = raw.get("Decrypt") or []
    names: Dict[str, Dict[str, bool]] = {}

    for specs, flag in ((encrypt_specs, "encrypt"), (decrypt_specs, "decrypt")):
        if not isinstance(specs, list):
            raise ConfigurationError(
                f"{model_name}: Encrypt/Decrypt must be lists", ErrorCode.INVALID_CONFIG
            )
        for spec in specs:
            if not isinstance(spec, Mapping) or not spec.get("key"):
                raise ConfigurationError(
                    f"{model_name}: every Encrypt/Decrypt entry needs a key",
                    ErrorCode.INVALID_CONFIG,
                )
            flags = names.setdefault(
                spec["key"], {"encrypt": False, "decrypt": False, "should_hash": False}
            )
            flags[flag] = True
            flags["should_hash"] = flags["should_hash"] or _flag(
                spec, "shouldHash", "should_hash", default=False
            )

    return ModelConfig(
        model_name=model_name,
        fields={name: FieldPolicy(name=name, **flags) for name, flags in names.items()},
    )


def _parse_model(model_name: str, raw: Any) -> ModelConfig:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(
            f"Configuration for model {model_name} must be an object", ErrorCode.INVALID_CONFIG
        )
    if "Encrypt" in raw or "Decrypt" in raw:
        return _parse_list_layout(model_name, raw)

    fields = {}
    for name, spec in raw.items():
        if not isinstance(spec, Mapping):
            raise ConfigurationError(
                f"{model_name}.{name}: field configuration must be an object",
                ErrorCode.INVALID_CONFIG,
            )
        fields[name] = FieldPolicy(
            name=name,
            encrypt=_flag(spec, "encrypt", "shouldEncrypt", default=True),
            decrypt=_flag(spec, "decrypt", "shouldDecrypt", default=True),
            should_hash=_flag(spec, "shouldHash", "should_hash", default=False),
        )
    return ModelConfig(model_name=model_name, fields=fields)


class FieldEncryptionConfig:
    """Declarative field configuration keyed by model name."""

    def __init__(self, models: Mapping[str, ModelConfig]) -> None:
        self._models = dict(models)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FieldEncryptionConfig:
        """
        Parse configuration from a mapping.

        Raises:
            ConfigurationError: If the configuration is malformed
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("Encryption configuration must be an object", ErrorCode.INVALID_CONFIG)
        models = data.get("encryptedFields", data)
        return cls({name: _parse_model(name, raw) for name, raw in models.items()})

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> FieldEncryptionConfig:
        """
        Load configuration from a JSON file.

        Raises:
            ConfigurationError: If the file is missing or not valid JSON
        """
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            raise ConfigurationError(
                f"Failed to read encryption configuration: {e}", ErrorCode.MISSING_CONFIG
            ) from e
        return cls.from_dict(data)

    @property
    def model_names(self) -> List[str]:
        return sorted(self._models)

    def model(self, model_name: str) -> ModelConfig:
        """
        Get a model's configuration.

        Raises:
            ConfigurationError: If the model is not configured
        """
        try:
            return self._models[model_name]
        except KeyError:
            raise ConfigurationError(
                f"Encryption configuration not found for model {model_name}",
                ErrorCode.MISSING_CONFIG,
            )


class FieldFailurePolicy(Enum):
    """Handling of a single field's encryption/decryption failure."""

    STRICT = "strict"  # Fail the whole object operation
    PASSTHROUGH = "passthrough"  # Keep the field unchanged and log a warning

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> FieldFailurePolicy:
        try:
            return cls(s.strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Invalid field failure policy: {s}", ErrorCode.INVALID_CONFIG
            )


def _optional_number(name: str, raw: Optional[str], kind: type) -> Optional[Any]:
    if raw is None or raw.strip() == "":
        return None
    try:
        value = kind(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", ErrorCode.INVALID_CONFIG)
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}", ErrorCode.INVALID_CONFIG)
    return value


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the envelope engine."""

    project_id: str
    location_id: str = "global"
    config_path: str = DEFAULT_CONFIG_PATH
    cache_ttl_seconds: Optional[float] = None
    cache_max_entries: Optional[int] = DEFAULT_CACHE_MAX_ENTRIES
    cache_deks: bool = True
    field_failure_policy: FieldFailurePolicy = FieldFailurePolicy.STRICT
    database_url: Optional[str] = None

    @classmethod
    def from_env(cls, env_file: Optional[Union[str, Path]] = None) -> Settings:
        """
        Load settings from the environment (after loading a .env file).

        Raises:
            ConfigurationError: If GOOGLE_CLOUD_PROJECT is missing or a value is invalid
        """
        load_dotenv(env_file)

        project_id = os.environ.get("GOOGLE_CLOUD_PROJECT", "").strip()
        if not project_id:
            raise ConfigurationError(
                "GOOGLE_CLOUD_PROJECT environment variable is required",
                ErrorCode.MISSING_ENV_VAR,
            )

        max_entries = _optional_number(
            "FIELD_ENVELOPE_CACHE_MAX_ENTRIES",
            os.environ.get("FIELD_ENVELOPE_CACHE_MAX_ENTRIES"),
            int,
        )

        return cls(
            project_id=project_id,
            location_id=os.environ.get("KMS_LOCATION_ID") or "global",
            config_path=os.environ.get("CONFIG_PATH") or DEFAULT_CONFIG_PATH,
            cache_ttl_seconds=_optional_number(
                "FIELD_ENVELOPE_CACHE_TTL", os.environ.get("FIELD_ENVELOPE_CACHE_TTL"), float
            ),
            cache_max_entries=max_entries if max_entries is not None else DEFAULT_CACHE_MAX_ENTRIES,
            cache_deks=os.environ.get("FIELD_ENVELOPE_CACHE_DEKS", "true").strip().lower()
            not in ("0", "false", "no"),
            field_failure_policy=FieldFailurePolicy.from_str(
                os.environ.get("FIELD_ENVELOPE_FIELD_POLICY") or "strict"
            ),
            database_url=os.environ.get("DATABASE_URL") or None,
        )

    def load_field_config(self) -> FieldEncryptionConfig:
        return FieldEncryptionConfig.from_file(self.config_path)
