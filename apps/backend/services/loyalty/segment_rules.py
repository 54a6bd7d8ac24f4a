"""
Custom Segment Rules
====================

Purpose:
- Parse and evaluate admin-defined segment rules against a customer metric
  snapshot.

Rule shapes:
    leaf:   {"field": "lifetimeSpent", "operator": "greater", "value": 1000000}
    group:  {"logic": "OR", "conditions": [<leaf|group>, ...]}

A definition's top-level list is combined with the definition's logic
(AND unless set).

Design:
- parse_rules(strict=True) is used at creation time and raises
  InvalidRuleDefinition with the path of the first bad node.
- parse_rules(strict=False) is used at evaluation time: bad nodes become
  leaves that never match. Evaluation never raises.
- Unknown field names are accepted; a missing value never matches.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .customer_metrics import CustomerMetrics
from .errors import InvalidRuleDefinition
from .loyalty_models import CustomSegmentRecord


OPERATOR_ALIASES = {
    "eq": "equals",
    "neq": "not_equals",
    "gt": "greater",
    "gte": "greater_or_equal",
    "lt": "less",
    "lte": "less_or_equal",
}
NUMERIC_OPERATORS = ("greater", "greater_or_equal", "less", "less_or_equal")
OPERATORS = NUMERIC_OPERATORS + ("equals", "not_equals", "contains", "between", "in", "not_in")
LOGIC = ("AND", "OR")

_CAMEL_RE = re.compile(r"_([a-z0-9])")


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def field_key(name: str) -> str:
    """
    snake_case -> camelCase; camelCase passes through.
    """
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name.strip())


def slugify(name: str) -> str:
    key = re.sub(r"\s+", "_", (name or "").strip().lower())
    return re.sub(r"[^a-z0-9_]", "", key)


@dataclass(frozen=True)
class RuleLeaf:
    field: str
    operator: str
    value: Any = None
    # False for nodes that failed lenient parsing; such leaves never match
    valid: bool = True

    def evaluate(self, fields: Mapping[str, Any]) -> bool:
        if not self.valid:
            return False
        actual = fields.get(field_key(self.field))
        if actual is None:
            return False
        return _apply(self.operator, actual, self.value)


@dataclass(frozen=True)
class RuleGroup:
    logic: str = "AND"
    conditions: List[Union["RuleGroup", RuleLeaf]] = field(default_factory=list)
    valid: bool = True

    def evaluate(self, fields: Mapping[str, Any]) -> bool:
        if not self.valid or not self.conditions:
            return False
        if self.logic == "OR":
            return any(c.evaluate(fields) for c in self.conditions)
        return all(c.evaluate(fields) for c in self.conditions)


RuleNode = Union[RuleGroup, RuleLeaf]


# -----------------------------
# Operators
# -----------------------------
def _apply(operator: str, actual: Any, expected: Any) -> bool:
    if operator in NUMERIC_OPERATORS:
        if not (_is_number(actual) and _is_number(expected)):
            return False
        if operator == "greater":
            return actual > expected
        if operator == "greater_or_equal":
            return actual >= expected
        if operator == "less":
            return actual < expected
        return actual <= expected

    if operator == "between":
        if not _valid_range(expected) or not _is_number(actual):
            return False
        low, high = expected
        return low <= actual <= high

    if operator == "equals":
        return _same(actual, expected)
    if operator == "not_equals":
        return not _same(actual, expected)

    if operator == "contains":
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        if isinstance(actual, str) and isinstance(expected, str):
            return expected.lower() in actual.lower()
        return False

    if operator in ("in", "not_in"):
        if not isinstance(expected, (list, tuple)):
            return False
        found = any(_same(actual, x) for x in expected)
        return found if operator == "in" else not found

    return False


def _same(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return a == b
    if isinstance(a, str) and isinstance(b, str):
        return a.strip().upper() == b.strip().upper()
    return a == b


def _valid_range(v: Any) -> bool:
    return (
        isinstance(v, (list, tuple))
        and len(v) == 2
        and _is_number(v[0])
        and _is_number(v[1])
        and v[0] <= v[1]
    )


# -----------------------------
# Parsing
# -----------------------------
def _leaf_problem(node: Dict[str, Any]) -> Optional[str]:
    name = node.get("field")
    if not isinstance(name, str) or not name.strip():
        return "field is required"
    op = node.get("operator")
    if not isinstance(op, str):
        return "operator is required"
    op = OPERATOR_ALIASES.get(op, op)
    if op not in OPERATORS:
        return f"unknown operator: {node.get('operator')}"
    value = node.get("value")
    if op in NUMERIC_OPERATORS and not _is_number(value):
        return f"{op} needs a numeric value"
    if op == "between" and not _valid_range(value):
        return "between needs [low, high] numbers with low <= high"
    if op in ("in", "not_in") and not isinstance(value, (list, tuple)):
        return f"{op} needs a list value"
    return None


def _parse_node(node: Any, path: str, strict: bool) -> RuleNode:
    def bad(message: str, at: str = path) -> RuleNode:
        if strict:
            raise InvalidRuleDefinition(message, at)
        return RuleLeaf(field="", operator="", valid=False)

    if not isinstance(node, dict):
        return bad("rule must be an object")

    if "conditions" in node:
        logic = str(node.get("logic") or "AND").upper()
        if logic not in LOGIC:
            if strict:
                raise InvalidRuleDefinition(f"unknown logic: {node.get('logic')}", f"{path}.logic")
            return RuleGroup(logic=logic, valid=False)
        return _parse_group(node.get("conditions"), logic, f"{path}.conditions", strict)

    problem = _leaf_problem(node)
    if problem:
        return bad(problem)
    op = node["operator"]
    return RuleLeaf(
        field=node["field"].strip(),
        operator=OPERATOR_ALIASES.get(op, op),
        value=node.get("value"),
    )


def _parse_group(conditions: Any, logic: str, path: str, strict: bool) -> RuleGroup:
    if not isinstance(conditions, (list, tuple)) or not conditions:
        if strict:
            raise InvalidRuleDefinition("at least one condition is required", path)
        return RuleGroup(logic=logic, valid=False)
    parsed = [_parse_node(c, f"{path}[{i}]", strict) for i, c in enumerate(conditions)]
    return RuleGroup(logic=logic, conditions=parsed)


def parse_rules(rules: Any, logic: str = "AND", *, strict: bool = True) -> RuleGroup:
    """
    Top-level entry. `rules` is a list of nodes or a single group object.
    """
    top_logic = str(logic or "AND").upper()
    if top_logic not in LOGIC:
        if strict:
            raise InvalidRuleDefinition(f"unknown logic: {logic}", "logic")
        return RuleGroup(logic=top_logic, valid=False)
    if isinstance(rules, dict):
        rules = [rules]
    return _parse_group(rules, top_logic, "rules", strict)


# -----------------------------
# Evaluation
# -----------------------------
class SegmentRuleEngine:
    def evaluate(self, rules: Any, metrics: CustomerMetrics, logic: str = "AND") -> bool:
        tree = parse_rules(rules, logic, strict=False)
        return tree.evaluate(metrics.rule_fields())

    def matching_segments(
        self,
        definitions: Iterable[CustomSegmentRecord],
        metrics: CustomerMetrics,
    ) -> List[str]:
        fields = metrics.rule_fields()
        out = []
        for d in definitions:
            if not d.is_active:
                continue
            if parse_rules(d.rules, d.logic, strict=False).evaluate(fields):
                out.append(d.segment_key)
        return sorted(out)

    def count_matches(self, definition: CustomSegmentRecord, snapshots: Sequence[CustomerMetrics]) -> int:
        if not definition.is_active:
            return 0
        tree = parse_rules(definition.rules, definition.logic, strict=False)
        return sum(1 for m in snapshots if tree.evaluate(m.rule_fields()))
