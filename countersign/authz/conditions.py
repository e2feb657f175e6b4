"""
Condition trees for attribute-based rules.

A tree is built from leaves ``{"attribute", "operator", "value"}`` and the
groups ``{"and": [...]}``, ``{"or": [...]}`` and ``{"not": node}``. The same
grammar is used by workflow stage predicates.
"""

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from ..core.exceptions import PolicyError

logger = logging.getLogger(__name__)

OPERATORS = frozenset({
    "eq",
    "ne",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "not_in",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "regex",
})

GROUP_OPERATORS = ("and", "or", "not")

_MISSING = object()


class AttributeContext:
    """
    Resolves dotted attribute paths against namespaced attribute maps.

    ``user.clearance_level`` looks up ``clearance_level`` in the ``user``
    namespace; nested dicts are walked one segment at a time. Every path
    that is read is remembered in ``accessed``.
    """

    def __init__(self, namespaces: Dict[str, Dict[str, Any]], aliases: Optional[Dict[str, str]] = None):
        self.namespaces = namespaces
        self.aliases = aliases or {}
        self.accessed: Set[str] = set()

    def resolve(self, path: str) -> Tuple[bool, Any]:
        self.accessed.add(path)
        head, _, rest = path.partition(".")
        head = self.aliases.get(head, head)
        scope = self.namespaces.get(head)
        if scope is None or not rest:
            return False, None
        if rest in scope:
            return True, scope[rest]
        value: Any = scope
        for segment in rest.split("."):
            if isinstance(value, dict) and segment in value:
                value = value[segment]
            else:
                return False, None
        return True, value


def _as_collection(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def _member(actual: Any, candidates: Iterable[Any]) -> bool:
    for candidate in candidates:
        if actual == candidate:
            return True
        if isinstance(candidate, str) and "/" in candidate and isinstance(actual, str):
            try:
                if ipaddress.ip_address(actual) in ipaddress.ip_network(candidate, strict=False):
                    return True
            except ValueError:
                continue
    return False


def apply_operator(operator: str, actual: Any, expected: Any) -> bool:
    """Evaluate one operator. Incomparable values compare as False."""
    if operator == "eq":
        return actual == expected
    if operator == "ne":
        return actual != expected
    if operator in ("gt", "gte", "lt", "lte"):
        try:
            if operator == "gt":
                return actual > expected
            if operator == "gte":
                return actual >= expected
            if operator == "lt":
                return actual < expected
            return actual <= expected
        except TypeError:
            logger.debug(f"Cannot compare {actual!r} {operator} {expected!r}")
            return False
    if operator == "in":
        return _member(actual, _as_collection(expected))
    if operator == "not_in":
        return not _member(actual, _as_collection(expected))
    if operator in ("contains", "not_contains"):
        if isinstance(actual, str):
            found = isinstance(expected, str) and expected in actual
        elif isinstance(actual, (list, tuple, set, frozenset)):
            found = expected in actual
        elif isinstance(actual, dict):
            found = expected in actual
        else:
            found = False
        return found if operator == "contains" else not found
    if operator == "starts_with":
        return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)
    if operator == "ends_with":
        return isinstance(actual, str) and isinstance(expected, str) and actual.endswith(expected)
    if operator == "regex":
        try:
            return re.search(str(expected), str(actual)) is not None
        except re.error as e:
            raise PolicyError(f"Invalid regular expression {expected!r}: {e}", operator=operator) from e
    raise PolicyError(f"Unknown operator: {operator}", operator=operator)


@dataclass
class Condition:
    """Leaf: attribute operator value."""
    attribute: str
    operator: str
    value: Any = None

    def evaluate(self, context: AttributeContext) -> bool:
        found, actual = context.resolve(self.attribute)
        if not found:
            return False
        return apply_operator(self.operator, actual, self.value)

    def attributes(self) -> Set[str]:
        return {self.attribute}

    def to_dict(self) -> Dict[str, Any]:
        return {"attribute": self.attribute, "operator": self.operator, "value": self.value}


@dataclass
class ConditionGroup:
    """AND / OR over children, or NOT over a single child."""
    op: str
    children: List["ConditionNode"] = field(default_factory=list)

    def evaluate(self, context: AttributeContext) -> bool:
        if self.op == "and":
            return all(child.evaluate(context) for child in self.children)
        if self.op == "or":
            return any(child.evaluate(context) for child in self.children)
        return not self.children[0].evaluate(context)

    def attributes(self) -> Set[str]:
        result: Set[str] = set()
        for child in self.children:
            result |= child.attributes()
        return result

    def to_dict(self) -> Dict[str, Any]:
        if self.op == "not":
            return {"not": self.children[0].to_dict()}
        return {self.op: [child.to_dict() for child in self.children]}


ConditionNode = Union[Condition, ConditionGroup]


def parse_condition(data: Any, policy_id: Optional[str] = None) -> ConditionNode:
    """
    Build a condition tree.

    Raises:
        PolicyError: unknown operator or malformed structure
    """
    if isinstance(data, list):
        return from_legacy_conditions(data, policy_id)
    if not isinstance(data, dict):
        raise PolicyError(f"Condition must be an object, got {type(data).__name__}", policy_id=policy_id)

    if "attribute" in data:
        operator = data.get("operator")
        if operator not in OPERATORS:
            raise PolicyError(f"Unknown operator: {operator}", policy_id=policy_id, operator=operator)
        if not isinstance(data["attribute"], str) or "." not in data["attribute"]:
            raise PolicyError(
                f"Attribute must be a namespaced path: {data['attribute']!r}", policy_id=policy_id
            )
        if operator == "regex":
            try:
                re.compile(str(data.get("value")))
            except re.error as e:
                raise PolicyError(f"Invalid regular expression: {e}", policy_id=policy_id, operator=operator) from e
        return Condition(attribute=data["attribute"], operator=operator, value=data.get("value"))

    keys = [k for k in data if k.lower() in GROUP_OPERATORS]
    if len(keys) != 1 or len(data) != 1:
        raise PolicyError(f"Malformed condition node: {sorted(data)}", policy_id=policy_id)
    key = keys[0]
    op = key.lower()
    if op == "not":
        return ConditionGroup(op="not", children=[parse_condition(data[key], policy_id)])
    children = data[key]
    if not isinstance(children, list) or not children:
        raise PolicyError(f"'{key}' requires a non-empty list", policy_id=policy_id)
    return ConditionGroup(op=op, children=[parse_condition(child, policy_id) for child in children])


def from_legacy_conditions(conditions: List[Dict[str, Any]], policy_id: Optional[str] = None) -> ConditionNode:
    """
    Convert a flat condition list.

    Entries carry ``logical_operator`` (AND/OR, joining the entry to the
    previous one) and an optional ``group_id``. AND binds tighter than OR
    inside a group; groups are ANDed together.
    """
    if not conditions:
        raise PolicyError("Condition list is empty", policy_id=policy_id)

    groups: Dict[str, List[Dict[str, Any]]] = {}
    for entry in conditions:
        groups.setdefault(str(entry.get("group_id", "default")), []).append(entry)

    group_nodes: List[ConditionNode] = []
    for entries in groups.values():
        runs: List[List[ConditionNode]] = [[]]
        for index, entry in enumerate(entries):
            leaf = parse_condition(
                {k: entry[k] for k in ("attribute", "operator", "value") if k in entry},
                policy_id,
            )
            joiner = str(entry.get("logical_operator", "AND")).lower()
            if index > 0 and joiner == "or":
                runs.append([])
            runs[-1].append(leaf)
        ands = [run[0] if len(run) == 1 else ConditionGroup("and", run) for run in runs]
        group_nodes.append(ands[0] if len(ands) == 1 else ConditionGroup("or", ands))

    return group_nodes[0] if len(group_nodes) == 1 else ConditionGroup("and", group_nodes)
