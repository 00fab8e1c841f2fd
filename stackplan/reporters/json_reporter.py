"""
JSON plan / apply report generator.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from stackplan import __version__
from stackplan.models.state import Action
from stackplan.planner import Planner


def _count_by_action(planner: Planner) -> Dict[str, int]:
    if planner.state is None:
        return {a.value: 0 for a in Action}
    return planner.state.counts()


def build_report(
    planner: Planner,
    source_path: str,
    order: List[str],
    outputs: Optional[Dict[str, Any]] = None,
) -> str:
    actions = planner.state.actions if planner.state is not None else {}
    report = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "plan": planner.name,
            "backend": planner.backend.name,
            "tool": "stackplan",
            "version": __version__,
        },
        "summary": _count_by_action(planner),
        "order": list(order),
        "resources": [
            {
                "name": r.name,
                "resource_type": r.resource_type,
                "depends_on": sorted(planner.graph.dependencies(r.name)),
                "action": actions[r.name].value if r.name in actions else None,
            }
            for r in planner.resources
        ],
        "lookups": [{"name": lk.name, "kind": lk.kind} for lk in planner.lookups],
        "findings": [f.to_dict() for f in planner.findings],
        "state": planner.state.to_dict() if planner.state is not None else None,
        "outputs": outputs or {},
    }
    return json.dumps(report, indent=2, default=str)
