from txnflow.strategy.base import BaseTransactionStrategy, TransactionStrategy
from txnflow.strategy.registry import StrategyRegistry, transaction

__all__ = ["BaseTransactionStrategy", "StrategyRegistry", "TransactionStrategy", "transaction"]
