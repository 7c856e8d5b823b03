"""Runtime configuration — env-driven, file-backed, passed explicitly.

Settings come from (highest priority first) explicit keyword arguments, the
global ``config.toml``, ``MODVAULT_*`` environment variables, a ``.env`` file,
and finally the defaults below.  There is no module-level config instance:
every component receives the ``VaultConfig`` it should use.

Examples
--------
Override via environment::

    export MODVAULT_REGISTRY_URL=https://registry.example.org
    export MODVAULT_TRUSTED_PUBLIC_KEY=<64 hex chars>
    export MODVAULT_ALLOW_UNSIGNED=false

Or via ``$MODVAULT_DIR/config.toml``::

    registry_url = "https://registry.example.org"
    max_download_workers = 8
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import TypeAdapter, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from modvault.errors import ConfigInvalid, ConfigKeyNotFound, ConfigValueInvalid

CONFIG_FOLDER_ENV_VAR = "MODVAULT_DIR"
CONFIG_FOLDER_NAME = ".modvault"
CONFIG_FILE_NAME = "config.toml"
MANIFEST_FILE_NAME = "modvault.toml"
DEFAULT_REGISTRY_URL = "https://registry.modvault.dev"

logger = logging.getLogger(__name__)


class VaultConfig(BaseSettings):
    """All tunables for resolution, retrieval, verification and storage."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MODVAULT_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Registry
    registry_url: str = DEFAULT_REGISTRY_URL
    registry_token: str | None = None
    proxy_url: str | None = None

    # Network policy
    request_timeout_seconds: float = 30.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.3
    retry_max_delay_seconds: float = 5.0
    max_download_workers: int = 4
    inflight_wait_seconds: float = 300.0

    # Storage paths (relative paths are resolved against the project dir)
    store_dir: Path = Path(".modvault")
    packages_dir: Path = Path("modvault_packages")
    lockfile_name: str = "modvault.lock"
    link_mode: Literal["copy", "symlink"] = "copy"

    # Trust policy
    trusted_public_key: str = ""  # hex Ed25519 public key
    allow_unsigned: bool = False
    strict_abi: bool = False

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def graphql_url(self) -> str:
        """Registry GraphQL endpoint, with exactly one slash before ``graphql``."""
        return f"{self.registry_url.rstrip('/')}/graphql"


# ---------------------------------------------------------------------------
# Global config folder and file
# ---------------------------------------------------------------------------

def config_folder() -> Path:
    """Return the global config folder.

    ``$MODVAULT_DIR`` when set and non-empty, otherwise ``~/.modvault``.
    """
    override = os.environ.get(CONFIG_FOLDER_ENV_VAR, "").strip()
    if override:
        return Path(override)
    return Path.home() / CONFIG_FOLDER_NAME


def load_config(path: Path | None = None, **overrides: Any) -> VaultConfig:
    """Load ``config.toml`` (if present) on top of env and defaults.

    A missing file yields the env/default configuration.  Unparsable TOML or
    invalid values raise ``ConfigInvalid``.
    """
    config_path = path or config_folder() / CONFIG_FILE_NAME
    file_values = _read_config_file(config_path)
    try:
        return VaultConfig(**{**file_values, **overrides})
    except ValidationError as exc:
        raise ConfigInvalid(
            f"Invalid configuration in {config_path}: {exc}",
            path=str(config_path),
        ) from exc


# Dotted keys understood by the command-line ``config get`` and ``config set``
# commands.
_DOTTED_KEYS: dict[str, str] = {
    "registry.url": "registry_url",
    "registry.token": "registry_token",
    "proxy.url": "proxy_url",
    "network.timeout": "request_timeout_seconds",
    "network.retries": "retry_max_attempts",
    "network.workers": "max_download_workers",
    "trust.public_key": "trusted_public_key",
    "trust.allow_unsigned": "allow_unsigned",
    "abi.strict": "strict_abi",
}


def get_config_value(config: VaultConfig, key: str) -> str:
    """Read a dotted configuration key as display text.

    Raises ``ConfigKeyNotFound`` for unknown keys.
    """
    field = _DOTTED_KEYS.get(key)
    if field is None:
        raise ConfigKeyNotFound(f"Key not found: {key}", key=key)
    value = getattr(config, field)
    if key == "registry.token":
        return "<set>" if value else "<unset>"
    if key == "proxy.url" and not value:
        return "No proxy configured"
    return str(value)


def set_config_value(
    config: VaultConfig, key: str, value: str, path: Path | None = None
) -> VaultConfig:
    """Set a dotted configuration key and persist it to ``config.toml``.

    Changing ``registry.url`` clears the stored registry token.  An empty
    ``proxy.url`` removes the proxy.  Other keys in the file are kept.
    Returns the updated configuration.

    Raises
    ------
    ConfigKeyNotFound
        *key* is not a known dotted key.
    ConfigValueInvalid
        *value* does not parse as the key's type.
    ConfigInvalid
        The existing file cannot be read or rewritten.
    """
    field = _DOTTED_KEYS.get(key)
    if field is None:
        raise ConfigKeyNotFound(f"Key not found: {key}", key=key)

    updates: dict[str, Any] = {}
    if key == "proxy.url" and not value:
        updates[field] = None
    else:
        annotation = VaultConfig.model_fields[field].annotation
        try:
            updates[field] = TypeAdapter(annotation).validate_python(value)
        except ValidationError as exc:
            raise ConfigValueInvalid(
                f"Failed to parse value `{value}` for key `{key}`", key=key, value=value
            ) from exc
    if key == "registry.url" and updates[field] != config.registry_url:
        updates["registry_token"] = None

    config_path = path or config_folder() / CONFIG_FILE_NAME
    file_values = _read_config_file(config_path)
    for name, new_value in updates.items():
        if new_value is None:
            file_values.pop(name, None)
        else:
            file_values[name] = new_value
    _write_config_file(config_path, file_values)
    logger.info("Set %s in %s", key, config_path)
    return config.model_copy(update=updates)


def _read_config_file(config_path: Path) -> dict[str, Any]:
    if not config_path.is_file():
        return {}
    try:
        with config_path.open("rb") as fh:
            return tomllib.load(fh)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigInvalid(
            f"Error while reading config {config_path}: {exc}",
            path=str(config_path),
        ) from exc


def _toml_scalar(name: str, value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (str, Path)):
        return json.dumps(str(value))
    raise ConfigInvalid(
        f"Cannot rewrite non-scalar config value `{name}`", key=name
    )


def _write_config_file(config_path: Path, values: dict[str, Any]) -> None:
    """Atomically write *values* as flat ``key = value`` TOML."""
    text = "".join(
        f"{name} = {_toml_scalar(name, value)}\n" for name, value in sorted(values.items())
    )
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=".config-", suffix=".tmp", dir=config_path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp_name, config_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as exc:
        raise ConfigInvalid(
            f"Error while writing config {config_path}: {exc}",
            path=str(config_path),
        ) from exc


def configure_logging(config: VaultConfig) -> logging.Logger:
    """Apply ``config.log_level`` to the ``modvault`` logger hierarchy."""
    package_logger = logging.getLogger("modvault")
    package_logger.setLevel(config.log_level.upper())
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        package_logger.addHandler(handler)
    return package_logger
