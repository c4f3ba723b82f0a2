"""Strategy id -> implementation."""

from __future__ import annotations

from typing import Any

from stagehand.core.errors import UnknownStrategy
from stagehand.signing.base import SigningStrategy, StrategyContext
from stagehand.signing.eoa import DirectKeyStrategy
from stagehand.signing.ledger import HardwareWalletStrategy
from stagehand.signing.multisig import MultisigProposalStrategy

STRATEGIES: dict[str, type[SigningStrategy]] = {
    DirectKeyStrategy.id: DirectKeyStrategy,
    HardwareWalletStrategy.id: HardwareWalletStrategy,
    MultisigProposalStrategy.id: MultisigProposalStrategy,
}


def available_strategies() -> list[str]:
    return sorted(STRATEGIES)


def create_strategy(
    strategy_id: str,
    context: StrategyContext,
    args: dict[str, Any] | None = None,
    **kwargs: Any,
) -> SigningStrategy:
    """Instantiate the strategy registered as ``strategy_id``.

    Extra keyword arguments (``transport=``, ``client=``) go to the constructor.
    """
    cls = STRATEGIES.get(strategy_id)
    if cls is None:
        raise UnknownStrategy(f"Unknown signing strategy {strategy_id!r}; expected one of {available_strategies()}")
    return cls(context, args, **kwargs)
