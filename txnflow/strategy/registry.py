"""Map transaction types to strategy factories.

Strategies come from two places:

  - Python modules in a strategies directory, marked with @transaction::

        from txnflow.strategy import BaseTransactionStrategy, transaction

        @transaction("ship_name_change")
        class ShipNameChangeStrategy(BaseTransactionStrategy):
            ...

  - YAML definitions in a definitions directory, one DeclarativeStrategy each.
"""
from __future__ import annotations

import importlib.util
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from txnflow.compiler.parser import parse_transaction_yaml
from txnflow.compiler.validator import format_issues, validate_definition
from txnflow.strategy.declarative import DeclarativeStrategy

if TYPE_CHECKING:
    from collections.abc import Callable

    from txnflow.strategy.base import TransactionStrategy
    from txnflow.strategy.declarative import TransactionService
    from txnflow.types import TransactionDefinition

logger = logging.getLogger(__name__)

TRANSACTION_ATTR = "__transaction_type__"


def transaction(transaction_type: str):
    """Mark a strategy class as the implementation of `transaction_type`."""
    def decorator(cls: type) -> type:
        setattr(cls, TRANSACTION_ATTR, transaction_type)
        return cls
    return decorator


class StrategyRegistry:
    def __init__(self, service: TransactionService | None = None):
        self.service = service
        self._factories: dict[str, Callable[[], TransactionStrategy]] = {}
        self.definitions: dict[str, TransactionDefinition] = {}

    def register(self, transaction_type: str, factory: Callable[[], TransactionStrategy]) -> None:
        self._factories[transaction_type] = factory

    def register_definition(self, definition: TransactionDefinition) -> None:
        self.definitions[definition.name] = definition
        self.register(definition.name, lambda: DeclarativeStrategy(definition, self.service))

    def types(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, transaction_type: str) -> bool:
        return transaction_type in self._factories

    def create(self, transaction_type: str) -> TransactionStrategy:
        factory = self._factories.get(transaction_type)
        if factory is None:
            available = ", ".join(self.types()) or "none"
            raise KeyError(f'Unknown transaction type "{transaction_type}". Available: {available}')
        return factory()

    __call__ = create

    def load_modules(self, strategies_dir: str | Path) -> list[str]:
        """Import every .py file in a directory and register marked classes."""
        loaded: list[str] = []
        path = Path(strategies_dir)
        if not path.is_dir():
            return loaded

        for py_file in sorted(path.glob("*.py")):
            try:
                spec = importlib.util.spec_from_file_location(py_file.stem, py_file)
                if not spec or not spec.loader:
                    continue
                mod = importlib.util.module_from_spec(spec)
                spec.loader.exec_module(mod)

                for attr_name in dir(mod):
                    obj = getattr(mod, attr_name)
                    ttype = getattr(obj, TRANSACTION_ATTR, None) if isinstance(obj, type) else None
                    if ttype and obj.__module__ == mod.__name__:
                        self.register(ttype, obj)
                        loaded.append(ttype)
            except Exception as e:
                logger.warning("Failed to load strategy module %s: %s", py_file, e)
        return loaded

    def load_definitions(self, definitions_dir: str | Path) -> list[str]:
        """Parse and register every valid *.yaml definition in a directory."""
        loaded: list[str] = []
        path = Path(definitions_dir)
        if not path.is_dir():
            return loaded

        for yaml_file in sorted(path.glob("*.y*ml")):
            try:
                definition = parse_transaction_yaml(yaml_file.read_text(encoding="utf-8"))
            except ValueError as e:
                logger.warning("Skipping %s: %s", yaml_file.name, e)
                continue
            issues = validate_definition(definition)
            if any(i.level == "error" for i in issues):
                logger.warning("Skipping %s, invalid definition:\n%s", yaml_file.name, format_issues(issues))
                continue
            self.register_definition(definition)
            loaded.append(definition.name)
        return loaded
