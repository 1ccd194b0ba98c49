"""Runtime settings.

Precedence (highest first): ``CALIBRA_<SECTION>__<FIELD>`` environment
variables, command-line ``--<section>.<field>`` flags, model defaults.
``.env`` is loaded by the entrypoint unless ``CALIBRA_TEST_MODE=true``.
"""

from __future__ import annotations

import argparse
import os
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "CALIBRA_"


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=8300, ge=1, le=65535)


class DatabaseSettings(BaseModel):
    url: str = "sqlite+aiosqlite:///calibra/data/calibra.db"
    echo: bool = False


class StoreSettings(BaseModel):
    backend: Literal["filesystem", "http"] = "filesystem"
    data_dir: str = "calibra/data"
    bucket: str = "calibra-submissions"
    base_url: str = ""
    service_key: str = ""
    retention_days: int = Field(default=30, ge=1)
    timeout: float = 30.0
    max_retries: int = Field(default=3, ge=1)


class AuthSettings(BaseModel):
    nonce_ttl_seconds: int = Field(default=600, ge=1)
    key_env: str = "CALIBRA_SUBMISSION_ENC_KEY_BASE64"


class LedgerSettings(BaseModel):
    backend: Literal["memory", "web3"] = "memory"
    rpc_url: str = ""
    contract_address: str = ""
    private_key_env: str = "CALIBRA_LEDGER_PRIVATE_KEY"
    timeout: float = 30.0


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    canonical_policy: Literal["strict", "lenient"] = "strict"

    @field_validator("canonical_policy", mode="before")
    @classmethod
    def _lower_policy(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


def add_args(parser: argparse.ArgumentParser) -> None:
    """Register ``--section.field`` flags for every setting."""
    for section, model in Settings.model_fields.items():
        sub = model.annotation
        if isinstance(sub, type) and issubclass(sub, BaseModel):
            for name in sub.model_fields:
                parser.add_argument(f"--{section}.{name}", type=str, default=None)
        else:
            parser.add_argument(f"--{section}", type=str, default=None)


def _set(tree: dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    node = tree
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value


def load_settings(
    args: argparse.Namespace | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    environ = os.environ if environ is None else environ
    tree: dict[str, Any] = {}

    if args is not None:
        for key, value in vars(args).items():
            if value is not None and key.split(".")[0] in Settings.model_fields:
                _set(tree, key, value)

    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        dotted = key[len(ENV_PREFIX):].lower().replace("__", ".")
        if dotted.split(".")[0] in Settings.model_fields:
            _set(tree, dotted, value)

    return Settings.model_validate(tree)


__all__ = [
    "AuthSettings",
    "DatabaseSettings",
    "LedgerSettings",
    "ServerSettings",
    "Settings",
    "StoreSettings",
    "add_args",
    "load_settings",
]
