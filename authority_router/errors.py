"""Error taxonomy for authority resolution and privileged dispatch."""

from __future__ import annotations

from typing import Any, Dict, Optional


class RouterError(RuntimeError):
    """Base class for errors raised by the authority router."""


class ConfigurationError(RouterError):
    """Raised when chain or signer configuration is missing or invalid."""


class ContractInterfaceError(RouterError):
    """Raised when a contract does not expose the expected accessor."""

    def __init__(self, target: str, accessor: str, *, reason: Optional[str] = None) -> None:
        message = f"{target} does not expose {accessor}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.target = target
        self.accessor = accessor


class UnknownOwnerError(RouterError):
    """Raised when the owner of a target is neither signer, Safe nor timelock."""

    def __init__(self, target: str, owner: str) -> None:
        super().__init__(f"Unknown owner {owner} for {target}")
        self.target = target
        self.owner = owner


class UnknownAdminError(RouterError):
    """Raised when the timelock admin is neither the signer nor the Safe."""

    def __init__(self, timelock: str, admin: str) -> None:
        super().__init__(f"Unknown admin {admin} for timelock {timelock}")
        self.timelock = timelock
        self.admin = admin


class ProposalServiceError(RouterError):
    """Raised when the Safe transaction service rejects a request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        detail: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url
        self.detail = detail


class InsufficientConfirmationsError(RouterError):
    """Raised when a Safe proposal lacks owner signatures to meet the threshold."""

    def __init__(self, safe_tx_hash: str, confirmations: int, threshold: int) -> None:
        super().__init__(f"Safe transaction {safe_tx_hash} has {confirmations} of {threshold} required signatures")
        self.safe_tx_hash = safe_tx_hash
        self.confirmations = confirmations
        self.threshold = threshold


class TransactionFailedError(RouterError):
    """Raised when a mined transaction reports a failed status."""

    def __init__(self, tx_hash: str, receipt: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Transaction {tx_hash} reverted")
        self.tx_hash = tx_hash
        self.receipt = receipt or {}


class UnsupportedAuthorityError(RouterError, NotImplementedError):
    """Raised when an authority kind has no dispatch path on a router."""


__all__ = [
    "ConfigurationError",
    "ContractInterfaceError",
    "InsufficientConfirmationsError",
    "ProposalServiceError",
    "RouterError",
    "TransactionFailedError",
    "UnknownAdminError",
    "UnknownOwnerError",
    "UnsupportedAuthorityError",
]
