"""Configuration models for the authority router."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError

IMPERSONATION_METHODS = ("anvil_impersonateAccount", "hardhat_impersonateAccount")
PRIVATE_KEY_ENV = "ROUTER_PRIVATE_KEY"


def _is_address(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("0x") and len(value) == 42


@dataclass
class ChainDeployment:
    """Per-chain address table and endpoints consumed by the router."""

    chain_id: int
    rpc_url: str
    safe_address: str
    safe_tx_service_url: str
    timelock_address: Optional[str] = None
    proxy_admin_address: Optional[str] = None
    fork_mode: bool = False
    impersonation_method: str = "anvil_impersonateAccount"
    service_api_key: Optional[str] = None
    http_timeout_seconds: float = 30.0
    receipt_timeout_seconds: float = 180.0
    eta_buffer_seconds: int = 900
    safe_version: str = "1.3.0"

    def __post_init__(self) -> None:
        if not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise ConfigurationError("chain_id must be a positive integer")
        if not isinstance(self.rpc_url, str) or not self.rpc_url:
            raise ConfigurationError(f"rpc_url is required for chain {self.chain_id}")
        if not isinstance(self.safe_tx_service_url, str) or not self.safe_tx_service_url:
            raise ConfigurationError(f"safe_tx_service_url is required for chain {self.chain_id}")
        if not _is_address(self.safe_address):
            raise ConfigurationError("safe_address must be a 0x-prefixed 20-byte address")
        for name in ("timelock_address", "proxy_admin_address"):
            value = getattr(self, name)
            if value is not None and not _is_address(value):
                raise ConfigurationError(f"{name} must be a 0x-prefixed 20-byte address when provided")
        if self.impersonation_method not in IMPERSONATION_METHODS:
            raise ConfigurationError(
                f"impersonation_method must be one of {', '.join(IMPERSONATION_METHODS)}"
            )
        if self.http_timeout_seconds <= 0 or self.receipt_timeout_seconds <= 0:
            raise ConfigurationError("timeouts must be positive")
        if not isinstance(self.eta_buffer_seconds, int) or self.eta_buffer_seconds < 0:
            raise ConfigurationError("eta_buffer_seconds must be a non-negative integer")
        if not isinstance(self.safe_version, str) or not self.safe_version:
            raise ConfigurationError("safe_version must be a version string such as 1.3.0")

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "ChainDeployment":
        def _resolve(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return default

        chain_id = _resolve("chain_id", "chainId")
        if chain_id is None:
            raise ConfigurationError("chain_id is required")
        return cls(
            chain_id=int(chain_id),
            rpc_url=str(_resolve("rpc_url", "rpcUrl", "rpc", default="")),
            safe_address=str(_resolve("safe_address", "safe", "safeAddress", default="")),
            safe_tx_service_url=str(
                _resolve("safe_tx_service_url", "safeTxServiceUrl", "txServiceUrl", default="")
            ),
            timelock_address=_resolve("timelock_address", "timelock", "timelockAddress"),
            proxy_admin_address=_resolve("proxy_admin_address", "proxyAdmin", "proxyAdminAddress"),
            fork_mode=bool(_resolve("fork_mode", "forkMode", default=False)),
            impersonation_method=str(
                _resolve("impersonation_method", "impersonationMethod", default="anvil_impersonateAccount")
            ),
            service_api_key=_resolve("service_api_key", "serviceApiKey"),
            http_timeout_seconds=float(_resolve("http_timeout_seconds", "httpTimeoutSeconds", default=30.0)),
            receipt_timeout_seconds=float(
                _resolve("receipt_timeout_seconds", "receiptTimeoutSeconds", default=180.0)
            ),
            eta_buffer_seconds=int(_resolve("eta_buffer_seconds", "etaBufferSeconds", default=900)),
            safe_version=str(_resolve("safe_version", "safeVersion", default="1.3.0")),
        )


@dataclass
class RouterConfig:
    """Loaded router configuration covering every supported chain."""

    chains: Dict[int, ChainDeployment] = field(default_factory=dict)
    journal_path: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "RouterConfig":
        raw_chains = data.get("chains") or {}
        chains: Dict[int, ChainDeployment] = {}
        if isinstance(raw_chains, dict):
            items = list(raw_chains.items())
        elif isinstance(raw_chains, list):
            items = [(entry.get("chain_id", entry.get("chainId")), entry) for entry in raw_chains]
        else:
            raise ConfigurationError("chains must be a mapping or a list")
        for key, entry in items:
            if not isinstance(entry, dict):
                raise ConfigurationError(f"chain entry {key!r} must be a mapping")
            payload = dict(entry)
            payload.setdefault("chain_id", key)
            deployment = ChainDeployment.from_mapping(payload)
            if deployment.chain_id in chains:
                raise ConfigurationError(f"duplicate configuration for chain {deployment.chain_id}")
            chains[deployment.chain_id] = deployment
        journal_path = data.get("journal_path", data.get("journalPath"))
        return cls(chains=chains, journal_path=str(journal_path) if journal_path else None)

    def for_chain(self, chain_id: int) -> ChainDeployment:
        try:
            return self.chains[int(chain_id)]
        except KeyError:
            raise ConfigurationError(f"no configuration for chain {chain_id}") from None


def load_config(path: str | Path) -> RouterConfig:
    """Load router configuration from a YAML (or JSON) file."""

    text = Path(path).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ConfigurationError("router configuration must be a mapping")
    return RouterConfig.from_mapping(data)


def private_key_from_env(chain_id: int) -> str:
    """Return the operator key for ``chain_id`` from the environment."""

    key = os.getenv(f"{PRIVATE_KEY_ENV}_{chain_id}") or os.getenv(PRIVATE_KEY_ENV)
    if not key:
        raise ConfigurationError(f"Missing {PRIVATE_KEY_ENV}_{chain_id} or {PRIVATE_KEY_ENV} env var")
    return key.strip()


__all__ = ["ChainDeployment", "RouterConfig", "load_config", "private_key_from_env"]
