"""Wire the router components for one chain from configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .authority import AuthorityInspector
from .chain import ChainClient, LocalAccountSigner
from .config import RouterConfig, private_key_from_env
from .journal import ActionJournal
from .router import ExecutionRouter, ProxyUpgradeRouter
from .safe import SafeProposalClient, SafeTransactionServiceClient
from .timelock import TimelockClient

logger = logging.getLogger(__name__)


@dataclass
class RouterSession:
    """Every client bound to a single chain deployment."""

    chain: ChainClient
    signer: LocalAccountSigner
    safe: SafeProposalClient
    execution_router: ExecutionRouter
    timelock: Optional[TimelockClient] = None
    upgrade_router: Optional[ProxyUpgradeRouter] = None
    journal: Optional[ActionJournal] = None


async def open_session(
    config: RouterConfig,
    chain_id: int,
    *,
    private_key: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    verify_chain: bool = True,
) -> RouterSession:
    """Build the clients for ``chain_id``.

    The operator key defaults to the ``ROUTER_PRIVATE_KEY_<chainId>`` or
    ``ROUTER_PRIVATE_KEY`` environment variable.
    """

    deployment = config.for_chain(chain_id)
    chain = ChainClient.from_deployment(deployment)
    if verify_chain:
        await chain.verify_chain_id()
    signer = LocalAccountSigner.from_key(
        private_key or private_key_from_env(deployment.chain_id),
        chain.web3,
        chain_id=deployment.chain_id,
    )
    journal = ActionJournal(config.journal_path) if config.journal_path else None
    service = SafeTransactionServiceClient(
        deployment.safe_tx_service_url,
        api_key=deployment.service_api_key,
        timeout=deployment.http_timeout_seconds,
        transport=transport,
    )
    safe = SafeProposalClient(
        chain_id=deployment.chain_id,
        safe_address=deployment.safe_address,
        signer=signer,
        chain=chain,
        service=service,
        journal=journal,
        safe_version=deployment.safe_version,
    )
    inspector = AuthorityInspector(chain)
    timelock: Optional[TimelockClient] = None
    if deployment.timelock_address:
        timelock = TimelockClient(
            chain_id=deployment.chain_id,
            timelock_address=deployment.timelock_address,
            signer=signer,
            chain=chain,
            safe=safe,
            fork_mode=deployment.fork_mode,
            inspector=inspector,
            journal=journal,
        )
    shared = dict(
        chain_id=deployment.chain_id,
        signer=signer,
        chain=chain,
        safe=safe,
        timelock=timelock,
        inspector=inspector,
        journal=journal,
    )
    upgrade_router: Optional[ProxyUpgradeRouter] = None
    if deployment.proxy_admin_address:
        upgrade_router = ProxyUpgradeRouter(
            proxy_admin_address=deployment.proxy_admin_address,
            eta_buffer_seconds=deployment.eta_buffer_seconds,
            **shared,
        )
    logger.info(
        "Router session ready for chain %s as %s",
        deployment.chain_id,
        signer.address,
        extra={"safe": safe.address, "fork_mode": deployment.fork_mode},
    )
    return RouterSession(
        chain=chain,
        signer=signer,
        safe=safe,
        execution_router=ExecutionRouter(**shared),
        timelock=timelock,
        upgrade_router=upgrade_router,
        journal=journal,
    )


__all__ = ["RouterSession", "open_session"]
