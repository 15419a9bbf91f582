"""Authority resolution and owner-aware dispatch of privileged calls."""

from .authority import AuthorityBindings, AuthorityInspector, AuthorityKind
from .config import ChainDeployment, RouterConfig, load_config
from .errors import (
    ConfigurationError,
    ContractInterfaceError,
    InsufficientConfirmationsError,
    ProposalServiceError,
    RouterError,
    TransactionFailedError,
    UnknownAdminError,
    UnknownOwnerError,
    UnsupportedAuthorityError,
)
from .journal import ActionJournal
from .router import DispatchResult, DispatchStatus, ExecutionRouter, PendingPrivilegedAction, ProxyUpgradeRouter
from .safe import SafeProposalClient, SafeTransactionServiceClient
from .session import RouterSession, open_session
from .timelock import QueuedTimelockAction, TimelockClient

__all__ = [
    "ActionJournal",
    "AuthorityBindings",
    "AuthorityInspector",
    "AuthorityKind",
    "ChainDeployment",
    "ConfigurationError",
    "ContractInterfaceError",
    "InsufficientConfirmationsError",
    "DispatchResult",
    "DispatchStatus",
    "ExecutionRouter",
    "PendingPrivilegedAction",
    "ProposalServiceError",
    "ProxyUpgradeRouter",
    "QueuedTimelockAction",
    "RouterConfig",
    "RouterError",
    "RouterSession",
    "SafeProposalClient",
    "SafeTransactionServiceClient",
    "TimelockClient",
    "TransactionFailedError",
    "UnknownAdminError",
    "UnknownOwnerError",
    "UnsupportedAuthorityError",
    "load_config",
    "open_session",
]
