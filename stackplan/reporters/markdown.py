"""
Markdown + Mermaid plan report, suitable for pasting into a pull request.
"""
import json
import re
from datetime import datetime, timezone
from typing import Dict, List

from jinja2 import Environment

from stackplan import __version__
from stackplan.expressions import to_plain
from stackplan.models.plan import Action, Operation, Plan

_ACTION_SYMBOL = {
    "create": "+",
    "update": "~",
    "delete": "-",
    "no-op": " ",
}

_ACTION_STYLE = {
    "create": "fill:#88cc00,color:#000",
    "update": "fill:#ffcc00,color:#000",
    "delete": "fill:#ff4444,color:#fff",
}


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _build_mermaid(plan: Plan) -> str:
    lines = ["flowchart LR"]
    for op in plan.operations:
        node_id = _sanitize_node_id(op.address)
        label = f"{_ACTION_SYMBOL[op.action.value].strip()} {op.address}".strip()
        shape = f"[/{label}/]" if op.protected else f"[{label}]"
        lines.append(f"    {node_id}{shape}")

    added_edges = set()
    for op in plan.operations:
        for dep in op.requires:
            edge = (_sanitize_node_id(dep), _sanitize_node_id(op.address))
            if edge not in added_edges:
                added_edges.add(edge)
                # arrows follow execution order
                lines.append(f"    {edge[0]} --> {edge[1]}")

    for op in plan.operations:
        style = _ACTION_STYLE.get(op.action.value)
        if style:
            lines.append(f"    style {_sanitize_node_id(op.address)} {style}")
    return "\n".join(lines)


def _attribute_lines(op: Operation) -> List[str]:
    if op.action == Action.DELETE or op.desired is None:
        return []
    lines = []
    prior = op.prior.inputs if op.prior else {}
    for key in op.changed:
        new = json.dumps(to_plain(op.desired.get(key)), default=str)
        if op.action == Action.UPDATE and key in prior:
            old = json.dumps(prior.get(key), default=str)
            lines.append(f"{key}: {old} -> {new}")
        else:
            lines.append(f"{key}: {new}")
    return lines


_TEMPLATE = """\
# {{ "Destroy" if plan.destroy else "Provisioning" }} Plan

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** stackplan v{{ version }}

---

## Summary

{% if plan.is_empty %}No changes. Infrastructure matches the declarations.
{% else %}Plan: **{{ counts["create"] }} to create, {{ counts["update"] }} to update, {{ counts["delete"] }} to delete** ({{ counts["no-op"] }} unchanged).
{% endif %}
{% if protected %}
Protected resources that would be deleted (apply will refuse):
{% for op in protected %}
- `{{ op.address }}`{% endfor %}
{% endif %}
---

## Operations

| # | Action | Resource | Type | Reason |
|---|--------|----------|------|--------|
{% for op in plan.operations %}| {{ loop.index }} | `{{ symbol[op.action.value] }}` {{ op.action.value }} | `{{ op.address }}` | `{{ op.resource_type }}` | {{ op.reason }} |
{% endfor %}
{% for op in changes %}
### {{ symbol[op.action.value] }} {{ op.address }}
{% if attributes[op.address] %}
```
{% for line in attributes[op.address] %}{{ line }}
{% endfor %}```
{% endif %}{% endfor %}
---

## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def build_report(plan: Plan, source_path: str) -> str:
    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)
    attributes: Dict[str, List[str]] = {op.address: _attribute_lines(op) for op in plan.changes}

    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        plan=plan,
        counts=plan.summary(),
        changes=plan.changes,
        protected=[op for op in plan.changes if op.action == Action.DELETE and op.protected],
        attributes=attributes,
        symbol=_ACTION_SYMBOL,
        mermaid=_build_mermaid(plan),
    )
