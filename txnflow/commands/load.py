"""txn load <definition> — compile a transaction definition, validate, output Mermaid diagram."""
from __future__ import annotations

import sys
from pathlib import Path

from txnflow.compiler import format_issues, generate_mermaid, parse_transaction_yaml, validate_definition


def cmd_load(path: str):
    definition_path = Path(path)
    if not definition_path.exists():
        print(f"Definition file not found: {definition_path}", file=sys.stderr)
        sys.exit(1)

    try:
        defn = parse_transaction_yaml(definition_path.read_text(encoding="utf-8"))
    except ValueError as e:
        print(f"✗ Parse error: {e}", file=sys.stderr)
        sys.exit(1)

    issues = validate_definition(defn)
    if any(i.level == "error" for i in issues):
        print(f'✗ Transaction "{defn.name}" failed validation:')
        print(format_issues(issues))
        sys.exit(1)

    n_fields = sum(len(s.fields) for s in defn.steps)
    print(f'✓ Transaction "{defn.name}" compiled ({len(defn.steps)} steps, {n_fields} fields)')
    if issues:
        print(format_issues(issues))
    print()

    print("```mermaid")
    print(generate_mermaid(defn))
    print("```")
    print()
    print(f"Copy it into TXN_DEFINITIONS_DIR to make \"{defn.name}\" available.")
