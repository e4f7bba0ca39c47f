import json
import os
import re
from typing import Any, Dict, List, Optional

import yaml

from stackplan.errors import ValidationError
from stackplan.expressions import Interpolation, Reference
from stackplan.models.resource import Declarations, OutputSpec, ResourceSpec


# ------------------------------------------------------------------ CFN YAML loader
# yaml.safe_load can't handle CloudFormation-specific tags (!Ref, !Sub, etc.).
# We register multi-constructors that turn them into plain dicts so the rest of the
# parser can operate on normal Python objects.

class _CfnLoader(yaml.SafeLoader):
    pass


def _cfn_tag_constructor(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> Any:
    """Convert any !Tag into {"Tag": value} so downstream code can traverse it."""
    if isinstance(node, yaml.ScalarNode):
        return {tag_suffix: loader.construct_scalar(node)}
    if isinstance(node, yaml.SequenceNode):
        return {tag_suffix: loader.construct_sequence(node, deep=True)}
    if isinstance(node, yaml.MappingNode):
        return {tag_suffix: loader.construct_mapping(node, deep=True)}
    return {tag_suffix: None}


# Catch all tags that start with "!"; CloudFormation uses many of them
_CfnLoader.add_multi_constructor("!", _cfn_tag_constructor)

_SUB_RE = re.compile(r"\$\{([^}!]+)\}")


def _snake(name: str) -> str:
    """``RegionalDomainName`` -> ``regional_domain_name`` (attribute names in state)."""
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name).lower()


def _intrinsic(val: Dict[str, Any]) -> Optional[str]:
    """Return the intrinsic name if ``val`` is a one-key intrinsic mapping."""
    if len(val) != 1:
        return None
    key = next(iter(val))
    name = key[4:] if key.startswith("Fn::") else key
    if key == "Ref" or name in ("GetAtt", "Sub", "Join"):
        return name
    if key.startswith("Fn::") or name in ("If", "Select", "Split", "ImportValue", "FindInMap",
                                          "Base64", "Cidr", "GetAZs", "Equals", "Not", "And", "Or"):
        return name
    return None


class _Template:
    def __init__(self, filepath: str, template: Dict[str, Any], parameters: Dict[str, Any]) -> None:
        self.filepath = filepath
        self.resources = template.get("Resources") or {}
        self.parameters = parameters

    def _ref(self, target: str, where: str) -> Any:
        if target in self.parameters:
            return self.parameters[target]
        if target in self.resources:
            return Reference(target, ("id",))
        raise ValidationError(f"{where}: !Ref {target} is not a parameter or resource", address=where)

    def _getatt(self, spec: Any, where: str) -> Reference:
        if isinstance(spec, str):
            logical, _, attr = spec.partition(".")
        elif isinstance(spec, list) and len(spec) == 2:
            logical, attr = spec
        else:
            raise ValidationError(f"{where}: malformed GetAtt {spec!r}", address=where)
        if not attr:
            raise ValidationError(f"{where}: GetAtt {spec!r} names no attribute", address=where)
        return Reference(logical, tuple(_snake(p) for p in str(attr).split(".")))

    def _sub(self, spec: Any, where: str) -> Any:
        if isinstance(spec, list):
            text, local_vars = spec[0], spec[1] if len(spec) > 1 else {}
        else:
            text, local_vars = spec, {}
        parts: List[Any] = []
        pos = 0
        for m in _SUB_RE.finditer(text):
            if m.start() > pos:
                parts.append(text[pos:m.start()])
            name = m.group(1).strip()
            if name in local_vars:
                parts.append(self.convert(local_vars[name], where))
            elif "." in name:
                parts.append(self._getatt(name, where))
            else:
                parts.append(self._ref(name, where))
            pos = m.end()
        if pos < len(text):
            parts.append(text[pos:])
        if len(parts) == 1:
            return parts[0]
        return Interpolation(tuple(parts))

    def _join(self, spec: Any, where: str) -> Any:
        if not (isinstance(spec, list) and len(spec) == 2 and isinstance(spec[1], list)):
            raise ValidationError(f"{where}: malformed Join {spec!r}", address=where)
        delimiter, items = spec
        parts: List[Any] = []
        for i, item in enumerate(items):
            if i:
                parts.append(delimiter)
            parts.append(self.convert(item, where))
        return Interpolation(tuple(parts))

    def convert(self, val: Any, where: str) -> Any:
        if isinstance(val, dict):
            name = _intrinsic(val)
            if name is not None:
                arg = next(iter(val.values()))
                if name == "Ref":
                    return self._ref(str(arg), where)
                if name == "GetAtt":
                    return self._getatt(arg, where)
                if name == "Sub":
                    return self._sub(arg, where)
                if name == "Join":
                    return self._join(arg, where)
                raise ValidationError(f"{where}: intrinsic {name} is not supported", address=where)
            return {k: self.convert(v, where) for k, v in val.items()}
        if isinstance(val, list):
            return [self.convert(v, where) for v in val]
        return val


def _depends_on(definition: Dict[str, Any]) -> List[str]:
    deps = definition.get("DependsOn") or []
    if isinstance(deps, str):
        deps = [deps]
    return list(deps)


def load_template(filepath: str) -> Dict[str, Any]:
    try:
        _, ext = os.path.splitext(filepath.lower())
        if ext == ".json":
            with open(filepath) as fh:
                template = json.load(fh)
        else:
            with open(filepath) as fh:
                template = yaml.load(fh, Loader=_CfnLoader)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise ValidationError(f"failed to parse {filepath}: {exc}") from exc
    if not isinstance(template, dict) or not isinstance(template.get("Resources"), dict):
        raise ValidationError(f"{filepath}: not a CloudFormation template (no Resources)")
    return template


def parse_file(filepath: str, variables: Optional[Dict[str, Any]] = None) -> Declarations:
    """
    Parse a CloudFormation template.

    ``variables`` override parameter defaults; Ref/GetAtt/Sub/Join become
    references and interpolations, so resource addresses are bare logical ids.
    """
    template = load_template(filepath)
    variables = variables or {}

    parameters: Dict[str, Any] = {}
    for name, definition in (template.get("Parameters") or {}).items():
        if name in variables:
            parameters[name] = variables[name]
        elif isinstance(definition, dict) and "Default" in definition:
            parameters[name] = definition["Default"]
    tpl = _Template(filepath, template, parameters)

    decls = Declarations()
    for logical_name, definition in tpl.resources.items():
        if not isinstance(definition, dict):
            continue
        resource_type = definition.get("Type", "")
        properties = definition.get("Properties", {}) or {}
        if definition.get("Condition"):
            raise ValidationError(f"{logical_name}: Conditions are not supported", address=logical_name)

        decls.resources.append(ResourceSpec(
            resource_type=resource_type,
            name=logical_name,
            attributes=tpl.convert(properties, logical_name),
            provider="aws",  # CloudFormation is AWS-only
            depends_on=_depends_on(definition),
            protected=definition.get("DeletionPolicy") == "Retain",
            source_format="cloudformation",
            source_file=filepath,
            logical_id=logical_name,
        ))

    for name, definition in (template.get("Outputs") or {}).items():
        if not isinstance(definition, dict) or "Value" not in definition:
            raise ValidationError(f"output {name!r} has no Value")
        decls.outputs.append(OutputSpec(
            name=name,
            value=tpl.convert(definition["Value"], f"output.{name}"),
            description=str(definition.get("Description", "")),
            source_file=filepath,
        ))

    return decls
