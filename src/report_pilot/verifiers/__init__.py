"""Verification chain for generated SQL."""

from report_pilot.verifiers.base import VerificationChain, Verifier
from report_pilot.verifiers.column_policy import ColumnPolicyVerifier, forbidden_columns
from report_pilot.verifiers.functions import FunctionAllowlistVerifier
from report_pilot.verifiers.objects import ObjectAllowlistVerifier
from report_pilot.verifiers.parsing import ParsedQuery, TableReference, parse_query
from report_pilot.verifiers.read_only import ReadOnlyVerifier, SingleStatementVerifier
from report_pilot.verifiers.syntax import SQLiteSyntaxVerifier
from report_pilot.verifiers.validator import SqlValidator

__all__ = [
    "Verifier",
    "VerificationChain",
    "SingleStatementVerifier",
    "ReadOnlyVerifier",
    "ObjectAllowlistVerifier",
    "FunctionAllowlistVerifier",
    "ColumnPolicyVerifier",
    "forbidden_columns",
    "SQLiteSyntaxVerifier",
    "SqlValidator",
    "ParsedQuery",
    "TableReference",
    "parse_query",
]
