"""
Citations & Confidence
======================

Provenance for a successful query: the catalog objects, semantic mappings
and join policies it relies on, plus a heuristic confidence score.
"""

from typing import Sequence

from report_pilot.catalog import JoinPolicy, SemanticMapping, normalize_ref, object_ref_of
from report_pilot.models import Citation, QueryAttempt, ValidationResult
from report_pilot.retrieval.chunking import tokenize

BASE_CONFIDENCE = 0.65
SCHEMA_BONUS = 0.1
SEMANTIC_BONUS = 0.1
RATIONALE_BONUS = 0.05
FAILED_ATTEMPT_PENALTY = 0.05
MAX_ATTEMPT_PENALTY = 0.2
DEGRADED_PENALTY = 0.05
TRUNCATED_PENALTY = 0.05


def build_citations(
    question: str,
    validation: ValidationResult,
    mappings: Sequence[SemanticMapping],
    join_policies: Sequence[JoinPolicy],
) -> tuple[Citation, ...]:
    objects = {normalize_ref(ref) for ref in validation.referenced_objects}
    columns = {normalize_ref(ref) for ref in validation.referenced_columns}
    phrase = " ".join(tokenize(question))

    citations = [Citation("schema_object", ref, ref) for ref in sorted(objects)]

    for mapping in sorted(mappings, key=lambda m: (m.entity_type, m.business_name.lower())):
        target = normalize_ref(mapping.target_ref)
        named = " ".join(tokenize(mapping.business_name)) in phrase
        if target in columns or (object_ref_of(target) in objects and (named or target in objects)):
            citations.append(Citation("semantic", target, mapping.business_name))

    for policy in join_policies:
        left, right = normalize_ref(policy.left_ref), normalize_ref(policy.right_ref)
        if left in objects and right in objects:
            citations.append(Citation("join_policy", f"{left}<->{right}", policy.on_clause))

    return tuple(citations)


def score_confidence(
    citations: Sequence[Citation],
    attempts: Sequence[QueryAttempt],
    result_attempt: QueryAttempt,
    retrieval_degraded: bool,
    truncated: bool,
) -> float:
    score = BASE_CONFIDENCE
    if any(c.kind == "schema_object" for c in citations):
        score += SCHEMA_BONUS
    if any(c.kind == "semantic" for c in citations):
        score += SEMANTIC_BONUS
    if result_attempt.rationale:
        score += RATIONALE_BONUS

    failed = sum(1 for attempt in attempts if attempt.attempt_id != result_attempt.attempt_id)
    score -= min(failed * FAILED_ATTEMPT_PENALTY, MAX_ATTEMPT_PENALTY)
    if retrieval_degraded:
        score -= DEGRADED_PENALTY
    if truncated:
        score -= TRUNCATED_PENALTY
    return round(min(max(score, 0.05), 0.95), 2)
