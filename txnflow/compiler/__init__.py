from txnflow.compiler.mermaid import generate_mermaid
from txnflow.compiler.parser import parse_transaction_yaml
from txnflow.compiler.validator import format_issues, validate_definition

__all__ = ["format_issues", "generate_mermaid", "parse_transaction_yaml", "validate_definition"]
