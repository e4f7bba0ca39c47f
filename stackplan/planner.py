"""
Load declarations into a validated stack and diff it against state.

The dependency graph comes from static analysis of attribute expressions:
every Reference found in a resource's attributes (plus explicit
``depends_on``) becomes an edge. Diff resolves each resource's attributes
with its dependencies' last known outputs, hashes the result and compares it
with the hash recorded in state.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Set

from stackplan.errors import ProvisionError, ValidationError
from stackplan.expressions import (
    UNKNOWN,
    Reference,
    contains_unknown,
    resolve,
    walk_path,
)
from stackplan.graph import DependencyGraph
from stackplan.models.plan import Action, Operation, Plan
from stackplan.models.resource import OutputSpec, ResourceSpec
from stackplan.models.state import StateSnapshot

logger = logging.getLogger(__name__)

Lookup = Callable[[Reference], Any]


@dataclass
class Stack:
    resources: Dict[str, ResourceSpec] = field(default_factory=dict)
    outputs: Dict[str, OutputSpec] = field(default_factory=dict)
    graph: DependencyGraph = field(default_factory=DependencyGraph)

    def order(self) -> List[str]:
        return self.graph.topological_order()


def load(
    resources: Iterable[ResourceSpec],
    outputs: Iterable[OutputSpec] = (),
    registry=None,
) -> Stack:
    """
    Validate declarations and build the dependency graph.

    Raises ValidationError for duplicate addresses, references to undeclared
    resources, dependency cycles and (with a registry) unknown resource types
    or unconfigured provider aliases.
    """
    stack = Stack()
    for spec in resources:
        existing = stack.resources.get(spec.address)
        if existing is not None:
            raise ValidationError(
                f"{spec.address} is declared twice ({existing.source_file or '?'} "
                f"and {spec.source_file or '?'})",
                address=spec.address,
            )
        stack.resources[spec.address] = spec
        stack.graph.add_node(spec.address)

    for spec in stack.resources.values():
        for dep in spec.dependencies:
            if dep not in stack.resources:
                raise ValidationError(
                    f"{spec.address} references undeclared resource {dep}",
                    address=spec.address,
                )
            stack.graph.add_edge(spec.address, dep)

    cycle = stack.graph.find_cycle()
    if cycle:
        raise ValidationError("dependency cycle: " + " -> ".join(cycle), address=cycle[0])

    for out in outputs:
        if out.name in stack.outputs:
            raise ValidationError(f"output {out.name!r} is declared twice")
        for dep in out.references:
            if dep not in stack.resources:
                raise ValidationError(f"output {out.name!r} references undeclared resource {dep}")
        stack.outputs[out.name] = out

    if registry is not None:
        registry.check(
            (s.address, s.provider, s.resource_type) for s in stack.resources.values()
        )

    logger.debug("loaded %d resources, %d outputs", len(stack.resources), len(stack.outputs))
    return stack


def compute_spec_hash(resource_type: str, provider: str, attributes: Dict[str, Any]) -> str:
    payload = json.dumps(
        {"type": resource_type, "provider": provider, "attributes": attributes},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def planning_lookup(snapshot: StateSnapshot, pending: Set[str]) -> Lookup:
    """Resolve from recorded state; anything not yet created is UNKNOWN."""

    def lookup(ref: Reference) -> Any:
        if ref.address in pending:
            return UNKNOWN
        st = snapshot.get(ref.address)
        if st is None:
            return UNKNOWN
        try:
            return walk_path(st.attributes, ref.path or ("id",))
        except KeyError:
            return UNKNOWN

    return lookup


def live_lookup(snapshot: StateSnapshot, referrer: str) -> Lookup:
    """Resolve from live state; a missing value is an error, never a placeholder."""

    def lookup(ref: Reference) -> Any:
        st = snapshot.get(ref.address)
        if st is None:
            raise ProvisionError(referrer, LookupError(f"{ref.address} has not been applied"))
        try:
            return walk_path(st.attributes, ref.path or ("id",))
        except KeyError:
            raise ProvisionError(
                referrer, LookupError(f"{ref} is not an attribute of {ref.address}")
            ) from None

    return lookup


def _changed_keys(prior: Dict[str, Any], desired: Dict[str, Any]) -> List[str]:
    keys = sorted(set(prior) | set(desired))
    return [k for k in keys if prior.get(k) != desired.get(k) or contains_unknown(desired.get(k))]


def diff(stack: Stack, snapshot: StateSnapshot, destroy: bool = False) -> Plan:
    """
    Classify every declared and recorded resource and order the operations.

    Creates and updates come after their dependencies; deletes come after
    every resource that depended on them (per the dependencies recorded in
    state), and after any remaining resource that used to depend on them.
    """
    ops: Dict[str, Operation] = {}
    creating: Set[str] = set()
    declared = {} if destroy else stack.resources

    for address in ([] if destroy else stack.order()):
        spec = stack.resources[address]
        prior = snapshot.get(address)
        desired = resolve(spec.attributes, planning_lookup(snapshot, creating))
        requires = stack.graph.dependencies(address)

        if prior is not None and prior.resource_type != spec.resource_type:
            raise ValidationError(
                f"{address} changed type from {prior.resource_type} to {spec.resource_type}; "
                "give the new resource a different name",
                address=address,
            )

        if prior is None:
            action, reason, changed = Action.CREATE, "not in state", sorted(desired)
            creating.add(address)
        elif contains_unknown(desired):
            action, reason = Action.UPDATE, "depends on values known after apply"
            changed = _changed_keys(prior.inputs, desired)
        elif compute_spec_hash(spec.resource_type, spec.provider, desired) != prior.spec_hash:
            # a cleared hash means drift or a failed wait: compare against what is live
            baseline = prior.inputs if prior.spec_hash else {
                k: prior.attributes.get(k) for k in desired
            }
            changed = _changed_keys(baseline, desired)
            action = Action.UPDATE
            reason = "drift detected" if not prior.spec_hash else "declaration changed"
            if not changed and prior.provider != spec.provider:
                changed, reason = ["provider"], "provider changed"
        else:
            action, reason, changed = Action.NOOP, "", []

        ops[address] = Operation(
            address=address,
            resource_type=spec.resource_type,
            action=action,
            provider=spec.provider,
            desired=desired,
            prior=prior,
            changed=changed,
            requires=requires,
            protected=spec.protected,
            reason=reason,
        )

    removed = [a for a in sorted(snapshot.resources) if a not in declared]
    for address in removed:
        st = snapshot.resources[address]
        spec = stack.resources.get(address)
        ops[address] = Operation(
            address=address,
            resource_type=st.resource_type,
            action=Action.DELETE,
            provider=st.provider,
            prior=st,
            protected=st.protected or bool(spec and spec.protected),
            reason="destroy requested" if destroy else "no longer declared",
        )
    for address in removed:
        # everything that depended on this resource must be gone or updated first
        for other, st in snapshot.resources.items():
            if address in st.dependencies and other in ops and other != address:
                ops[address].requires.append(other)

    graph = DependencyGraph()
    for address in ops:
        graph.add_node(address)
    for address, op in ops.items():
        for dep in op.requires:
            if dep in ops:
                graph.add_edge(address, dep)

    positions = {a: i for i, a in enumerate(ops)}

    def priority(address: str):
        return (1 if ops[address].action == Action.DELETE else 0, positions[address])

    order = graph.topological_order(key=priority)
    plan = Plan(operations=[ops[a] for a in order], destroy=destroy)
    logger.debug("plan: %s", plan.summary())
    return plan


def refresh(snapshot: StateSnapshot, registry) -> List[str]:
    """
    Re-read every resource in state through its capability.

    Resources that no longer exist are dropped (Diff will plan a Create).
    Resources whose live input attributes moved away from what was last
    recorded are drifted: their hash is cleared so Diff plans an Update.
    Returns the addresses whose state changed.
    """
    changed: List[str] = []
    for address, st in list(snapshot.resources.items()):
        cap = registry.capability(st.provider, st.resource_type)
        try:
            live = cap.read(st.resource_id)
        except Exception as exc:
            raise ProvisionError(address, exc) from exc

        if live is None:
            logger.warning("%s no longer exists; it will be recreated", address)
            del snapshot.resources[address]
            changed.append(address)
            continue

        drifted = [k for k in st.inputs if k in live and live.get(k) != st.attributes.get(k)]
        if drifted:
            logger.warning("%s drifted outside stackplan: %s", address, ", ".join(drifted))
            st.spec_hash = ""
        if drifted or live != st.attributes:
            st.attributes = live
            changed.append(address)
    return changed


def evaluate_outputs(stack: Stack, snapshot: StateSnapshot) -> Dict[str, Dict[str, Any]]:
    outputs: Dict[str, Dict[str, Any]] = {}
    for name, out in stack.outputs.items():
        try:
            value = resolve(out.value, live_lookup(snapshot, f"output.{name}"))
        except ProvisionError as exc:
            raise ValidationError(f"output {name!r}: {exc.cause}") from exc
        outputs[name] = {"value": value, "sensitive": out.sensitive}
    return outputs

