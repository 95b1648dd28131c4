"""Thin CLI router — dispatches to commands."""
from __future__ import annotations

import sys

USAGE = """\
txnflow — multi-step transaction workflow engine

Usage:
  txn load <definition.yaml>                  Compile a definition, validate, output Mermaid diagram
  txn types                                   List registered transaction types
  txn drafts [user-id]                        List saved drafts
  txn status <request-id>                     Show a saved request's status and history
  txn verify <request-id> [status] [reason]   Set a request's status (default VERIFIED)
  txn reset                                   Delete all saved drafts

Internal:
  txn mcp-server                              Start MCP Server
"""


def main():
    from txnflow.session import configure_logging
    configure_logging()

    args = sys.argv[1:]
    command = args[0] if args else None

    if command == "load":
        if len(args) < 2:
            print("Usage: txn load <definition.yaml>", file=sys.stderr)
            sys.exit(1)
        from txnflow.commands.load import cmd_load
        cmd_load(args[1])

    elif command == "types":
        from txnflow.session import build_registry
        for name in build_registry().types():
            print(name)

    elif command == "drafts":
        from txnflow.commands.drafts import cmd_drafts
        cmd_drafts(args[1] if len(args) > 1 else None)

    elif command == "status":
        if len(args) < 2:
            print("Usage: txn status <request-id>", file=sys.stderr)
            sys.exit(1)
        from txnflow.commands.drafts import cmd_status
        cmd_status(args[1])

    elif command == "verify":
        if len(args) < 2:
            print("Usage: txn verify <request-id> [status] [reason]", file=sys.stderr)
            sys.exit(1)
        from txnflow.commands.drafts import cmd_verify
        cmd_verify(args[1], *args[2:4])

    elif command == "reset":
        from txnflow.commands.reset import cmd_reset
        cmd_reset()

    elif command == "mcp-server":
        from txnflow.integrations.mcp_server import run_server
        run_server()

    elif command in ("help", "--help", "-h", None):
        print(USAGE)

    else:
        print(f"Unknown command: {command}", file=sys.stderr)
        print(USAGE)
        sys.exit(1)
