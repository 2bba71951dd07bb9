"""
Base Verifier Classes
=====================

Abstract base class and verification chain implementation.
"""

from abc import ABC, abstractmethod

import structlog

from report_pilot.models import Violation
from report_pilot.verifiers.parsing import ParsedQuery

logger = structlog.get_logger(__name__)


class Verifier(ABC):
    """Base class for all verifiers."""

    # Verifiers that need a sane query (e.g. ones that hand it to a database
    # engine) set this to False and are skipped once anything is violated.
    runs_after_violations: bool = True

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique name for this verifier."""
        pass

    @abstractmethod
    def verify(self, query: ParsedQuery, context: dict) -> list[Violation]:
        """
        Verify the query against this verifier's rules.

        Args:
            query: Parsed candidate query
            context: ``catalog``, ``dialect`` and steward ``notes`` of the target data source

        Returns:
            Violations found; empty when the query passes
        """
        pass


class VerificationChain:
    """Runs all verifiers in sequence, collecting every violation."""

    def __init__(self, verifiers: list[Verifier] | None = None) -> None:
        """
        Initialize the verification chain.

        Args:
            verifiers: List of verifiers to run. Defaults to standard chain.
        """
        if verifiers is not None:
            self.verifiers = verifiers
        else:
            # Lazy import to avoid circular imports
            from report_pilot.verifiers.column_policy import ColumnPolicyVerifier
            from report_pilot.verifiers.functions import FunctionAllowlistVerifier
            from report_pilot.verifiers.objects import ObjectAllowlistVerifier
            from report_pilot.verifiers.read_only import ReadOnlyVerifier, SingleStatementVerifier
            from report_pilot.verifiers.syntax import SQLiteSyntaxVerifier

            self.verifiers = [
                SingleStatementVerifier(),
                ReadOnlyVerifier(),
                ObjectAllowlistVerifier(),
                FunctionAllowlistVerifier(),
                ColumnPolicyVerifier(),
                SQLiteSyntaxVerifier(),
            ]

    def run(self, query: ParsedQuery, context: dict) -> list[Violation]:
        """
        Run all verifiers. Returns every violation found, in chain order.

        Unlike a fail-fast chain, later verifiers still run after a failure
        so the regeneration hint can list every problem at once.
        """
        violations: list[Violation] = []

        for verifier in self.verifiers:
            if violations and not verifier.runs_after_violations:
                continue
            found = verifier.verify(query, context)
            if found:
                logger.debug(
                    "verifier_failed",
                    verifier=verifier.name,
                    rules=sorted({v.rule.value for v in found}),
                )
            violations.extend(found)

        return violations
