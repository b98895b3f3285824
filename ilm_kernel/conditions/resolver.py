"""
Predicate Resolver — runs condition and custom-eligibility predicates.

The set of predicate kinds is closed:
  declarative-query : a read-only SELECT on a configured SQLite connection;
                      true when the first column of the first row is truthy
  named-predicate   : a Python callable registered under a name
  scripted-block    : a registered list of named predicates, all of which
                      must hold

Nothing is compiled or generated from configuration text. Any failure is
raised as PredicateEvaluationError so callers can apply their fail-policy.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ilm_kernel.errors import PredicateEvaluationError, UnknownPredicateError
from ilm_kernel.models.policy import PredicateKind

logger = logging.getLogger(__name__)

NamedPredicate = Callable[[Dict[str, Any]], bool]

_READ_ONLY_PREFIXES = ("SELECT", "WITH")


class PredicateResolver:
    """Reference resolver for the three predicate kinds."""

    def __init__(
        self,
        connection: Optional[sqlite3.Connection] = None,
        predicates: Optional[Dict[str, NamedPredicate]] = None,
        blocks: Optional[Dict[str, List[str]]] = None,
    ):
        self.connection = connection
        self._predicates: Dict[str, NamedPredicate] = dict(predicates or {})
        self._blocks: Dict[str, List[str]] = {
            name: list(steps) for name, steps in (blocks or {}).items()
        }

    def register_predicate(self, name: str, predicate: NamedPredicate) -> None:
        self._predicates[name] = predicate

    def register_block(self, name: str, steps: List[str]) -> None:
        """Register a scripted block as an ordered list of predicate names."""
        self._blocks[name] = list(steps)

    def run(
        self,
        kind: PredicateKind,
        code: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        context = context or {}
        if kind == PredicateKind.DECLARATIVE_QUERY:
            return self._run_query(code, context)
        if kind == PredicateKind.NAMED_PREDICATE:
            return self._run_named(code, context)
        if kind == PredicateKind.SCRIPTED_BLOCK:
            return self._run_block(code, context)
        raise UnknownPredicateError(f"Unsupported predicate kind: {kind}")

    def _run_query(self, code: str, context: Dict[str, Any]) -> bool:
        if self.connection is None:
            raise PredicateEvaluationError(
                "No connection configured for declarative-query predicates"
            )
        words = code.lstrip().split(None, 1)
        if not words or words[0].upper() not in _READ_ONLY_PREFIXES:
            raise PredicateEvaluationError(
                f"Declarative query must be a read-only SELECT: {code!r}"
            )
        try:
            row = self.connection.execute(code, _bind_params(context)).fetchone()
        except sqlite3.Error as e:
            raise PredicateEvaluationError(f"Query failed: {e}") from e
        if row is None:
            return False
        return bool(row[0])

    def _run_named(self, name: str, context: Dict[str, Any]) -> bool:
        predicate = self._predicates.get(name)
        if predicate is None:
            raise UnknownPredicateError(f"No predicate registered as {name!r}")
        try:
            return bool(predicate(context))
        except PredicateEvaluationError:
            raise
        except Exception as e:
            raise PredicateEvaluationError(f"Predicate {name} raised: {e}") from e

    def _run_block(self, name: str, context: Dict[str, Any]) -> bool:
        steps = self._blocks.get(name)
        if steps is None:
            raise UnknownPredicateError(f"No scripted block registered as {name!r}")
        for step in steps:
            if not self._run_named(step, context):
                logger.debug("Scripted block %s stopped at step %s", name, step)
                return False
        return True


def _bind_params(context: Dict[str, Any]) -> Dict[str, Any]:
    """Context values usable as named SQL parameters."""
    params = {}
    for key, value in context.items():
        if isinstance(value, datetime):
            params[key] = value.isoformat()
        elif value is None or isinstance(value, (str, int, float)):
            params[key] = value
    return params
