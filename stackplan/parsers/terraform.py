import logging
import os
from typing import Any, Dict, List, Optional, Set, Tuple

import hcl2

from stackplan.detect import detect_format
from stackplan.errors import ValidationError
from stackplan.expressions import parse_reference, parse_template
from stackplan.models.resource import Declarations, OutputSpec, ResourceSpec

logger = logging.getLogger(__name__)

# Meta-arguments that configure the resource instead of being sent to the API
_META_ARGS = ("depends_on", "provider", "lifecycle", "provisioner", "connection")
_UNSUPPORTED_META = ("count", "for_each")
_UNSUPPORTED_PREFIXES = ("data.", "module.", "each.", "count.", "self.", "path.", "terraform.")


def _infer_provider(resource_type: str) -> str:
    return resource_type.split("_", 1)[0]


def _unwrap(val: Any) -> Any:
    """
    python-hcl2 wraps single-element blocks in a list.
    Recursively unwrap single-element lists that contain dicts.
    """
    if isinstance(val, list):
        if len(val) == 1 and isinstance(val[0], dict):
            return _unwrap(val[0])
        return [_unwrap(v) for v in val]
    if isinstance(val, dict):
        return {k: _unwrap(v) for k, v in val.items() if not k.startswith("__")}
    return val


def _bare(expr: Any) -> str:
    """``'${aws.us_east_1}'`` -> ``'aws.us_east_1'``."""
    text = str(expr).strip()
    if text.startswith("${") and text.endswith("}"):
        text = text[2:-1].strip()
    return text


def _truthy(val: Any) -> bool:
    return val is True or str(val).lower() == "true"


class _Context:
    """Variables and locals visible to every file of one configuration."""

    def __init__(self, variables: Dict[str, Any], locals_: Dict[str, Any]) -> None:
        self.variables = variables
        self.locals = locals_
        self._evaluating: Set[str] = set()
        self._local_cache: Dict[str, Any] = {}

    def convert(self, value: Any, where: str) -> Any:
        if isinstance(value, str):
            return parse_template(value, lambda expr: self._substitute(expr, where))
        if isinstance(value, dict):
            return {k: self.convert(v, where) for k, v in value.items()}
        if isinstance(value, list):
            return [self.convert(v, where) for v in value]
        return value

    def _substitute(self, expr: str, where: str) -> Any:
        if expr.startswith("var."):
            name = expr[4:]
            if name not in self.variables:
                raise ValidationError(f"{where}: variable {name!r} has no value")
            return self.variables[name]
        if expr.startswith("local."):
            return self._local(expr[6:], where)
        if expr.startswith(_UNSUPPORTED_PREFIXES):
            raise ValidationError(f"{where}: unsupported reference ${{{expr}}}", address=where)
        ref = parse_reference(expr)
        if ref is None:
            raise ValidationError(
                f"{where}: unsupported expression ${{{expr}}}; only resource attributes, "
                "var.* and local.* can be interpolated",
                address=where,
            )
        return ref

    def _local(self, name: str, where: str) -> Any:
        if name in self._local_cache:
            return self._local_cache[name]
        if name not in self.locals:
            raise ValidationError(f"{where}: local value {name!r} is not declared")
        if name in self._evaluating:
            raise ValidationError(f"local value {name!r} refers to itself")
        self._evaluating.add(name)
        try:
            value = self.convert(self.locals[name], f"local.{name}")
        finally:
            self._evaluating.discard(name)
        self._local_cache[name] = value
        return value


def load_file(filepath: str) -> Dict[str, Any]:
    try:
        with open(filepath) as fh:
            return hcl2.load(fh)
    except Exception as exc:
        raise ValidationError(f"failed to parse {filepath}: {exc}") from exc


def _blocks(data: Dict[str, Any], key: str) -> List[Tuple[str, Any]]:
    """Flatten ``[{name: body}, ...]`` (or ``{name: body}``) into pairs."""
    raw = data.get(key, [])
    if isinstance(raw, dict):
        raw = [raw]
    pairs = []
    for item in raw:
        if isinstance(item, dict):
            pairs.extend(item.items())
    return pairs


def _resource_instances(data: Dict[str, Any]) -> List[Tuple[str, str, Dict[str, Any]]]:
    found = []
    for resource_type, instances in _blocks(data, "resource"):
        if isinstance(instances, list):
            # hcl2 wraps the block in a list
            for instance_map in instances:
                if not isinstance(instance_map, dict):
                    continue
                for name, raw_props in instance_map.items():
                    found.append((resource_type, name, raw_props))
        elif isinstance(instances, dict):
            for name, raw_props in instances.items():
                found.append((resource_type, name, raw_props))
    return found


def parse_files(filepaths: List[str], variables: Optional[Dict[str, Any]] = None) -> Declarations:
    """
    Parse one Terraform configuration spread over several files.

    Variables and locals are shared across the files, as Terraform does for
    a module directory. ``variables`` overrides declared defaults.
    """
    loaded = [(fp, load_file(fp)) for fp in filepaths]

    declared_vars: Dict[str, Any] = {}
    locals_: Dict[str, Any] = {}
    for fp, data in loaded:
        if data.get("module"):
            raise ValidationError(f"{fp}: module blocks are not supported")
        for name, body in _blocks(data, "variable"):
            body = _unwrap(body) if isinstance(body, dict) else {}
            if "default" in body:
                declared_vars[name] = body["default"]
        for block in data.get("locals", []):
            if isinstance(block, dict):
                locals_.update({k: v for k, v in block.items() if not k.startswith("__")})
    declared_vars.update(variables or {})
    ctx = _Context(declared_vars, locals_)

    decls = Declarations()
    for fp, data in loaded:
        for provider_type, body in _blocks(data, "provider"):
            body = _unwrap(body) if isinstance(body, dict) else {}
            alias = body.pop("alias", None)
            handle = f"{provider_type}.{alias}" if alias else provider_type
            decls.providers[handle] = ctx.convert(body, f"provider.{handle}")

        for resource_type, name, raw_props in _resource_instances(data):
            address = f"{resource_type}.{name}"
            props = _unwrap(raw_props) if isinstance(raw_props, dict) else {}
            if not isinstance(props, dict):
                props = {}
            for meta in _UNSUPPORTED_META:
                if meta in props:
                    raise ValidationError(f"{address}: '{meta}' is not supported", address=address)

            lifecycle = props.get("lifecycle") or {}
            depends_on = props.get("depends_on") or []
            if isinstance(depends_on, str):
                depends_on = [depends_on]
            provider = _bare(props["provider"]) if props.get("provider") else _infer_provider(resource_type)
            attributes = {k: v for k, v in props.items() if k not in _META_ARGS}

            decls.resources.append(ResourceSpec(
                resource_type=resource_type,
                name=name,
                attributes=ctx.convert(attributes, address),
                provider=provider,
                depends_on=[_bare(d) for d in depends_on],
                protected=isinstance(lifecycle, dict) and _truthy(lifecycle.get("prevent_destroy")),
                source_format="terraform",
                source_file=fp,
            ))

        for name, body in _blocks(data, "output"):
            body = _unwrap(body) if isinstance(body, dict) else {}
            if "value" not in body:
                raise ValidationError(f"output {name!r} has no value")
            decls.outputs.append(OutputSpec(
                name=name,
                value=ctx.convert(body["value"], f"output.{name}"),
                description=str(body.get("description", "")),
                sensitive=_truthy(body.get("sensitive", False)),
                source_file=fp,
            ))

    return decls


def parse_file(filepath: str, variables: Optional[Dict[str, Any]] = None) -> Declarations:
    return parse_files([filepath], variables)


def parse_directory(path: str, variables: Optional[Dict[str, Any]] = None) -> Declarations:
    if os.path.isfile(path):
        if detect_format(path) == "terraform":
            return parse_file(path, variables)
        return Declarations()

    files: List[str] = []
    for root, _, names in os.walk(path):
        for fname in sorted(names):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "terraform":
                files.append(fpath)
    return parse_files(files, variables)
