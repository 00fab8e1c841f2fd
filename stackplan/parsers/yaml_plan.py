"""
YAML plan files.

    name: demo
    lookups:
      vpc: {kind: aws_vpc, params: {default: true}}
    resources:
      site:
        type: aws_s3_bucket
      site-policy:
        type: aws_s3_bucket_policy
        inputs:
          bucket: !ref site.id
        depends_on: [site-bap]
    outputs:
      url: !format ["http://{}.s3-website-{}.amazonaws.com", !ref site.bucket, !ref region.name]

Tags are turned into deferred values while loading, so every reference is an
explicit value by the time it reaches the planner.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict

import yaml
from yaml.constructor import ConstructorError

from stackplan.errors import PlanFileError
from stackplan.models.values import Reference, interpolate, to_json
from stackplan.planner import Planner


class _PlanLoader(yaml.SafeLoader):
    pass


def _ref_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> Reference:
    text = loader.construct_scalar(node)
    target, sep, attribute = str(text).partition(".")
    if not sep or not target or not attribute:
        raise ConstructorError(
            None, None, f"!ref expects 'name.attribute', got {text!r}", node.start_mark
        )
    return Reference(target, attribute)


def _format_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> Any:
    items = loader.construct_sequence(node, deep=True)
    if not items or not isinstance(items[0], str):
        raise ConstructorError(
            None, None, "!format expects [template, values...]", node.start_mark
        )
    return interpolate(items[0], *items[1:])


def _json_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> Any:
    if isinstance(node, yaml.MappingNode):
        return to_json(loader.construct_mapping(node, deep=True))
    return to_json(loader.construct_sequence(node, deep=True))


_PlanLoader.add_constructor("!ref", _ref_constructor)
_PlanLoader.add_constructor("!format", _format_constructor)
_PlanLoader.add_constructor("!json", _json_constructor)


@dataclass
class PlanDocument:
    name: str
    source_file: str = ""
    lookups: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    resources: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)


def _mapping(doc: dict, key: str, filepath: str) -> Dict[str, Any]:
    val = doc.get(key) or {}
    if not isinstance(val, dict):
        raise PlanFileError(filepath, f"'{key}' must be a mapping")
    return val


def parse_file(filepath: str) -> PlanDocument:
    try:
        with open(filepath, "r", encoding="utf-8") as fh:
            doc = yaml.load(fh, Loader=_PlanLoader)
    except OSError as exc:
        raise PlanFileError(filepath, exc.strerror or str(exc)) from exc
    except yaml.YAMLError as exc:
        raise PlanFileError(filepath, f"invalid YAML: {exc}") from exc

    if not isinstance(doc, dict):
        raise PlanFileError(filepath, "plan file must be a mapping")

    default_name = os.path.splitext(os.path.basename(filepath))[0]
    plan = PlanDocument(
        name=str(doc.get("name") or default_name),
        source_file=filepath,
        lookups=_mapping(doc, "lookups", filepath),
        resources=_mapping(doc, "resources", filepath),
        outputs=_mapping(doc, "outputs", filepath),
    )

    for name, spec in plan.lookups.items():
        if not isinstance(spec, dict) or not spec.get("kind"):
            raise PlanFileError(filepath, f"lookup '{name}' needs a 'kind'")
        params = spec.get("params") or {}
        if not isinstance(params, dict) or {"kind", "name"} & set(params):
            raise PlanFileError(filepath, f"lookup '{name}': 'params' must be a mapping without 'kind'/'name'")
    for name, spec in plan.resources.items():
        if not isinstance(spec, dict) or not spec.get("type"):
            raise PlanFileError(filepath, f"resource '{name}' needs a 'type'")
        if not isinstance(spec.get("inputs") or {}, dict):
            raise PlanFileError(filepath, f"resource '{name}': 'inputs' must be a mapping")
        if not isinstance(spec.get("depends_on") or [], list):
            raise PlanFileError(filepath, f"resource '{name}': 'depends_on' must be a list")
    return plan


def build(planner: Planner, plan: PlanDocument) -> Planner:
    """Declare every lookup, resource and output of ``plan`` on ``planner``."""
    for name, spec in plan.lookups.items():
        planner.lookup(spec["kind"], name=name, **(spec.get("params") or {}))
    for name, spec in plan.resources.items():
        planner.declare(
            name,
            spec["type"],
            spec.get("inputs") or {},
            depends_on=spec.get("depends_on") or [],
        )
    for name, value in plan.outputs.items():
        planner.output(name, value)
    return planner


def load(filepath: str, planner_factory) -> Planner:
    """Parse ``filepath`` and declare it on ``planner_factory(plan_name)``."""
    plan = parse_file(filepath)
    return build(planner_factory(plan.name), plan)

