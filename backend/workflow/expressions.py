"""
Restricted condition language for edge guards.

Guards are Python-syntax boolean expressions evaluated against an
execution's context. Only a small subset of the grammar is accepted:

- literals: strings, numbers, booleans (``True``/``true``), ``None``/``null``,
  and list/tuple/set literals of those
- variable dereference by dot-path: ``subject.amount``, ``forms.intake.cpf``
- comparisons: ``== != < <= > >=``, ``in``, ``not in`` (chains allowed)
- boolean operators: ``and``, ``or``, ``not``

Calls, subscripts, arithmetic, lambdas and comprehensions are rejected when
the expression is parsed, so evaluation never reaches user code or I/O.
Missing paths resolve to ``None``. Ordering comparisons involving ``None``
or mismatched types are false, as are membership tests against a missing
collection: a guard that cannot be decided does not take its edge.

Usage:
    evaluator = ConditionEvaluator()
    evaluator.validate("amount > 100")          # -> []
    evaluator.evaluate("amount > 100", {"amount": 150})  # -> True
"""

import ast
import operator
import time
from typing import Any, Optional

from app.config import get_settings
from core.exceptions import EvaluationTimeout, InvalidExpression

_LITERAL_NAMES = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
}

_LITERAL_TYPES = (str, int, float, bool, type(None))

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.Compare,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.Name,
    ast.Attribute,
    ast.Load,
    ast.Constant,
    ast.List,
    ast.Tuple,
    ast.Set,
)

_ORDERING = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_MISSING = object()


def _strip_template(expression: str) -> str:
    text = expression.strip()
    if text.startswith("{{") and text.endswith("}}"):
        text = text[2:-2].strip()
    return text


class ConditionEvaluator:
    """Parses, shape-checks and evaluates guard expressions."""

    def __init__(self, timeout_ms: Optional[int] = None, max_nodes: Optional[int] = None):
        settings = get_settings()
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.WORKFLOW_CONDITION_TIMEOUT_MS
        self.max_nodes = max_nodes if max_nodes is not None else settings.WORKFLOW_CONDITION_MAX_NODES
        self._cache: dict[str, ast.Expression] = {}

    # ─── Public API ────────────────────────────────────────

    def validate(self, expression: str) -> list[str]:
        """Return the problems with an expression; empty when it is well formed."""
        try:
            self._compile(expression)
        except InvalidExpression as exc:
            return [exc.message]
        return []

    def evaluate(self, expression: str, context: dict) -> bool:
        """Evaluate a guard against a context.

        Raises:
            InvalidExpression: malformed or forbidden expression
            EvaluationTimeout: evaluation exceeded the time budget
        """
        tree = self._compile(expression)
        deadline = time.monotonic() + self.timeout_ms / 1000.0
        return bool(self._eval(tree.body, context or {}, deadline))

    # ─── Parsing ───────────────────────────────────────────

    def _compile(self, expression: str) -> ast.Expression:
        if not isinstance(expression, str):
            raise InvalidExpression(f"Expression must be a string, got {type(expression).__name__}")

        source = _strip_template(expression)
        cached = self._cache.get(source)
        if cached is not None:
            return cached

        if not source:
            raise InvalidExpression("Expression is empty")

        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as exc:
            raise InvalidExpression(f"Syntax error in '{source}': {exc.msg}") from exc

        count = 0
        for node in ast.walk(tree):
            count += 1
            if count > self.max_nodes:
                raise InvalidExpression(
                    f"Expression '{source}' exceeds {self.max_nodes} nodes"
                )
            if not isinstance(node, _ALLOWED_NODES):
                raise InvalidExpression(
                    f"Forbidden construct {type(node).__name__} in '{source}'"
                )
            self._check_node(node, source)

        self._cache[source] = tree
        return tree

    def _check_node(self, node: ast.AST, source: str) -> None:
        if isinstance(node, ast.Constant) and not isinstance(node.value, _LITERAL_TYPES):
            raise InvalidExpression(f"Unsupported literal {node.value!r} in '{source}'")
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.USub):
            operand = node.operand
            if not (isinstance(operand, ast.Constant) and isinstance(operand.value, (int, float))
                    and not isinstance(operand.value, bool)):
                raise InvalidExpression(f"Negation is only allowed on numeric literals in '{source}'")
        if isinstance(node, ast.Attribute):
            base = node.value
            while isinstance(base, ast.Attribute):
                base = base.value
            if not isinstance(base, ast.Name):
                raise InvalidExpression(f"Attribute access must start from a variable in '{source}'")
            if node.attr.startswith("_"):
                raise InvalidExpression(f"Private attribute '{node.attr}' in '{source}'")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise InvalidExpression(f"Reserved name '{node.id}' in '{source}'")

    # ─── Evaluation ────────────────────────────────────────

    def _eval(self, node: ast.AST, context: dict, deadline: float) -> Any:
        if time.monotonic() > deadline:
            raise EvaluationTimeout(f"Expression evaluation exceeded {self.timeout_ms}ms")

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                for value in node.values:
                    if not self._eval(value, context, deadline):
                        return False
                return True
            for value in node.values:
                if self._eval(value, context, deadline):
                    return True
            return False

        if isinstance(node, ast.UnaryOp):
            if isinstance(node.op, ast.Not):
                return not self._eval(node.operand, context, deadline)
            return -node.operand.value

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, context, deadline)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, context, deadline)
                if not self._compare(op, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in context:
                return context[node.id]
            lowered = node.id.lower()
            if lowered in _LITERAL_NAMES:
                return _LITERAL_NAMES[lowered]
            return None

        if isinstance(node, ast.Attribute):
            return self._resolve_path(node, context)

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval(elt, context, deadline) for elt in node.elts]

        if isinstance(node, ast.Set):
            items = [self._eval(elt, context, deadline) for elt in node.elts]
            try:
                return set(items)
            except TypeError:
                return items

        raise InvalidExpression(f"Unsupported node {type(node).__name__}")

    @staticmethod
    def _resolve_path(node: ast.Attribute, context: dict) -> Any:
        parts = []
        current: ast.AST = node
        while isinstance(current, ast.Attribute):
            parts.append(current.attr)
            current = current.value
        parts.append(current.id)

        value: Any = context
        for part in reversed(parts):
            if not isinstance(value, dict):
                return None
            value = value.get(part, _MISSING)
            if value is _MISSING:
                return None
        return value

    @staticmethod
    def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(op, ast.Eq):
            return left == right
        if isinstance(op, ast.NotEq):
            return left != right
        if isinstance(op, (ast.In, ast.NotIn)):
            if right is None:
                return False
            try:
                found = left in right
            except TypeError:
                return False
            return found if isinstance(op, ast.In) else not found
        if left is None or right is None:
            return False
        try:
            return bool(_ORDERING[type(op)](left, right))
        except TypeError:
            return False


# ─── Singleton ─────────────────────────────────────────────────

_evaluator: Optional[ConditionEvaluator] = None


def get_condition_evaluator() -> ConditionEvaluator:
    """Get or create the shared ConditionEvaluator."""
    global _evaluator
    if _evaluator is None:
        _evaluator = ConditionEvaluator()
    return _evaluator
