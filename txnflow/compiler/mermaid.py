"""Generate a Mermaid flowchart from a TransactionDefinition."""
from __future__ import annotations

import re
from typing import TYPE_CHECKING

from txnflow.types import StepKind

if TYPE_CHECKING:
    from txnflow.types import TransactionDefinition


def _make_id(index: int, name: str) -> str:
    clean = re.sub(r"[^a-zA-Z0-9_]", "_", name)
    clean = re.sub(r"_+", "_", clean).strip("_")
    return f"s{index}_{clean}"


def _edge_label(condition: str) -> str:
    return condition[:30].replace('"', "'")


def generate_mermaid(defn: TransactionDefinition) -> str:
    ids: dict[str, str] = {}
    nodes: list[str] = []
    edges: list[str] = []

    for i, step in enumerate(defn.steps):
        sid = _make_id(i, step.name)
        ids[step.name] = sid
        label = step.title.replace('"', "'")

        if step.when:
            # Conditional step → diamond
            nodes.append(f'    {sid}{{"{label}"}}')
        elif step.kind == StepKind.REVIEW:
            nodes.append(f'    {sid}(["{label}"])')
        elif step.kind == StepKind.ENTITY_SELECTION:
            nodes.append(f'    {sid}[/"{label}"/]')
        else:
            nodes.append(f'    {sid}["{label}"]')

    for i, step in enumerate(defn.steps):
        src = ids[step.name]
        if i + 1 < len(defn.steps):
            nxt = defn.steps[i + 1]
            if nxt.when:
                edges.append(f'    {src} -->|"{_edge_label(nxt.when)}"| {ids[nxt.name]}')
            else:
                edges.append(f"    {src} --> {ids[nxt.name]}")
        routes = list(step.routes)
        if step.eligibility:
            routes.extend(step.eligibility.routes)
        for r in routes:
            dst = ids.get(r.target)
            if not dst:
                continue
            if r.condition:
                edges.append(f'    {src} -.->|"{_edge_label(r.condition)}"| {dst}')
            else:
                edges.append(f"    {src} -.-> {dst}")

    lines = ["graph TD"]
    lines.extend(nodes)
    lines.extend(edges)
    return "\n".join(lines)
