"""
Markdown + Mermaid plan report generator.
"""
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from jinja2 import Environment

from stackplan.models.state import Action
from stackplan.planner import Planner

_ACTION_EMOJI = {
    "create": "🟢",
    "update": "🟡",
    "noop": "⚪",
    "delete": "🔴",
}

_ACTION_ASCII = {
    "create": "[+]",
    "update": "[~]",
    "noop": "[=]",
    "delete": "[-]",
}

_CATEGORY_MAP = {
    # resource type prefix -> subgraph label
    "aws_s3": "Website",
    "aws_security_group": "Networking",
    "aws_vpc": "Networking",
    "aws_subnet": "Networking",
    "aws_iam": "Identity",
    "aws_instance": "Compute",
    "aws_ami": "Compute",
    "aws_db": "Data",
    "aws_secret": "Data",
}

_ACTION_COLOR = {
    "create": "fill:#88cc00,color:#000",
    "update": "fill:#ffcc00,color:#000",
    "delete": "fill:#ff4444,color:#fff",
}


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _category(type_name: str) -> str:
    for prefix, label in _CATEGORY_MAP.items():
        if type_name.startswith(prefix):
            return label
    return "Other"


def _build_mermaid(planner: Planner) -> str:
    actions = planner.state.actions if planner.state is not None else {}
    subgraphs: Dict[str, List[str]] = defaultdict(list)
    shapes: Dict[str, str] = {}

    for lk in planner.lookups:
        subgraphs[_category(lk.kind)].append(lk.name)
        # lookups are read-only inputs
        shapes[lk.name] = f"[/{lk.name}/]"
    for r in planner.resources:
        sg = _category(r.resource_type)
        subgraphs[sg].append(r.name)
        if sg == "Data":
            shapes[r.name] = f"[({r.name})]"
        elif sg == "Networking":
            shapes[r.name] = f"{{{r.name}}}"
        else:
            shapes[r.name] = f"[{r.name}]"

    lines = ["flowchart LR"]
    for sg_name in ["Website", "Networking", "Identity", "Compute", "Data", "Other"]:
        members = subgraphs.get(sg_name, [])
        if not members:
            continue
        lines.append(f"    subgraph {sg_name}")
        for name in members:
            lines.append(f"        {_sanitize_node_id(name)}{shapes[name]}")
        lines.append("    end")

    for consumer, dependency in planner.graph.edges():
        if dependency in planner.graph:
            lines.append(f"    {_sanitize_node_id(dependency)} --> {_sanitize_node_id(consumer)}")

    for name, action in actions.items():
        color = _ACTION_COLOR.get(action.value)
        if color:
            lines.append(f"    style {_sanitize_node_id(name)} {color}")

    return "\n".join(lines)


_TEMPLATE = """\
# Provisioning Report: {{ plan }}

**Generated:** {{ generated }}
**Source:** {{ source }}
**Backend:** {{ backend }}

---

## Summary

**{{ resource_count }} resources** and **{{ lookup_count }} lookups** declared.
{% if state %}
{{ state.operation | capitalize }} {% if state.succeeded %}completed{% elif state.interrupted %}was interrupted{% else %}failed at `{{ state.failed }}`{% endif %}:
{% for a in ["create", "update", "noop", "delete"] %}
- **{{ a }}**: {{ counts[a] }}{% endfor %}
{% if state.pending %}

Not processed: {% for n in state.pending %}`{{ n }}`{% if not loop.last %}, {% endif %}{% endfor %}
{% endif %}
{% else %}
Plan only; no backend calls were made.
{% endif %}

---

## Apply Order

| # | Resource | Type | Depends on | Action |
|---|----------|------|------------|--------|
{% for r in ordered %}| {{ loop.index }} | `{{ r.name }}` | `{{ r.resource_type }}` | {{ deps[r.name] | join(", ") }} | {% if r.name in actions %}{{ icons[actions[r.name].value] }} {{ actions[r.name].value }}{% endif %} |
{% endfor %}

{% if lookups %}
## Lookups

| Lookup | Kind |
|--------|------|
{% for lk in lookups %}| `{{ lk.name }}` | `{{ lk.kind }}` |
{% endfor %}
{% endif %}
{% if findings %}
## Findings

{% for f in findings %}- **{{ f.severity.value }}** `{{ f.resource_name }}` ({{ f.rule }}): {{ f.message }}
{% endfor %}
{% endif %}
{% if outputs %}
## Outputs

| Output | Value |
|--------|-------|
{% for k, v in outputs.items() %}| `{{ k }}` | `{{ v }}` |
{% endfor %}
{% endif %}

## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def build_report(
    planner: Planner,
    source_path: str,
    order: List[str],
    outputs: Optional[Dict[str, Any]] = None,
    ascii_mode: bool = False,
) -> str:
    state = planner.state
    actions = state.actions if state is not None else {}
    counts = state.counts() if state is not None else {a.value: 0 for a in Action}

    by_name = {r.name: r for r in planner.resources}
    ordered = [by_name[n] for n in order if n in by_name]
    deps = {
        r.name: [f"`{d}`" for d in sorted(planner.graph.dependencies(r.name))]
        for r in planner.resources
    }

    env = Environment(autoescape=False, trim_blocks=True)
    template = env.from_string(_TEMPLATE)

    return template.render(
        plan=planner.name,
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        backend=planner.backend.name,
        resource_count=len(planner.resources),
        lookup_count=len(planner.lookups),
        state=state,
        counts=counts,
        ordered=ordered,
        deps=deps,
        actions=actions,
        icons=_ACTION_ASCII if ascii_mode else _ACTION_EMOJI,
        lookups=planner.lookups,
        findings=planner.findings,
        outputs=outputs or {},
        mermaid=_build_mermaid(planner),
    )
