"""Evidence and score model for the ten-factor idea checklist.

Architecture
------------
Every function here is pure: it reads a checklist (or an ``Idea``) and returns
new values without touching the database or the clock.

- **Evidence strength** (0-3) is derived from a factor's evidence list only.
- **Derived scores** split the checklist into the seven *potential* factors
  and the three *actualization* factors.  Each subset score is
  ``round(sum(score) / (n * 5) * 100)`` with missing scores counted as zero.
- **Buckets** classify a subset score as ``green`` (>= 70), ``yellow``
  (>= 40) or ``red``, but only when at least ``ceil(n / 2)`` factors of the
  subset are covered (scored or carrying any evidence).  Otherwise the
  bucket is ``unknown``.
"""
from __future__ import annotations

import math
from typing import Any, Mapping

from ideapilot.schemas import (
    ACTUALIZATION_FACTORS,
    FACTOR_KEYS,
    POTENTIAL_FACTORS,
    AssessmentProgress,
    ChecklistItem,
    DerivedScores,
    Evidence,
    Idea,
)

GREEN_THRESHOLD = 70
YELLOW_THRESHOLD = 40
HIGH_CONFIDENCE = 0.8
QUANTITATIVE_CONFIDENCE = 0.7
VOLUME_THRESHOLD = 5

FACTOR_LABELS: dict[str, str] = {
    "problem_clarity": "Problem Clarity",
    "market_pain_mentions": "Market Pain Mentions",
    "outcome_gap": "Outcome Gap",
    "competitive_moat": "Competitive Moat",
    "team_solution_fit": "Team-Solution Fit",
    "solution_evidence": "Solution Evidence",
    "team_market_fit": "Team-Market Fit",
    "early_demand": "Early Demand",
    "traffic_authority": "Traffic Authority",
    "marketing_product_fit": "Marketing-Product Fit",
}


# ---------------------------------------------------------------------------
# Evidence strength
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_quantitative(ev: Evidence) -> bool:
    if ev.type == "metrics":
        return True
    return _is_number(ev.value) and (ev.confidence or 0.0) >= QUANTITATIVE_CONFIDENCE


def evidence_strength(evidence: list[Evidence]) -> int:
    """Map an evidence list to a 0-3 strength."""
    if not evidence:
        return 0
    high_confidence = any((ev.confidence or 0.0) >= HIGH_CONFIDENCE for ev in evidence)
    if high_confidence and any(_is_quantitative(ev) for ev in evidence):
        return 3
    if high_confidence or len(evidence) >= VOLUME_THRESHOLD:
        return 2
    return 1


# ---------------------------------------------------------------------------
# Derived scores
# ---------------------------------------------------------------------------


def _is_covered(item: ChecklistItem | None) -> bool:
    return item is not None and (item.score is not None or bool(item.evidence))


def subset_score(checklist: Mapping[str, ChecklistItem], keys: tuple[str, ...]) -> int:
    total = 0
    for key in keys:
        item = checklist.get(key)
        if item is not None and item.score is not None:
            total += max(0, min(5, item.score))
    return max(0, min(100, round(total / (len(keys) * 5) * 100)))


def bucket_for(score: int, covered: int, n: int) -> str:
    if covered < math.ceil(n / 2):
        return "unknown"
    if score >= GREEN_THRESHOLD:
        return "green"
    if score >= YELLOW_THRESHOLD:
        return "yellow"
    return "red"


def derive_scores(checklist: Mapping[str, ChecklistItem]) -> DerivedScores:
    """Compute potential/actualization scores and buckets for a checklist.

    Missing factor entries are treated as unscored with no evidence, so the
    function is total over partial mappings too.
    """
    out: dict[str, Any] = {}
    for name, keys in (("potential", POTENTIAL_FACTORS), ("actualization", ACTUALIZATION_FACTORS)):
        score = subset_score(checklist, keys)
        covered = sum(1 for key in keys if _is_covered(checklist.get(key)))
        out[f"{name}_score"] = score
        out[f"{name}_bucket"] = bucket_for(score, covered, len(keys))
    return DerivedScores(**out)


# ---------------------------------------------------------------------------
# Progress helpers
# ---------------------------------------------------------------------------


def compute_progress(checklist: Mapping[str, ChecklistItem]) -> AssessmentProgress:
    completed = [key for key in FACTOR_KEYS if (item := checklist.get(key)) is not None and item.score is not None]
    return AssessmentProgress(
        current_step=len(completed),
        total_steps=len(FACTOR_KEYS),
        completed_factors=completed,
        is_assessment_complete=len(completed) == len(FACTOR_KEYS),
    )


def top_improvement_opportunity(checklist: Mapping[str, ChecklistItem]) -> dict[str, Any] | None:
    """Return the lowest-scoring scored factor, or None when nothing is scored."""
    scored = [
        (item.score, FACTOR_KEYS.index(key), key)
        for key, item in checklist.items()
        if key in FACTOR_KEYS and item.score is not None
    ]
    if not scored:
        return None
    score, _, key = min(scored)
    return {"factor": key, "label": FACTOR_LABELS[key], "score": score}


def idea_progress_label(idea: Idea) -> str:
    progress = compute_progress(idea.checklist)
    if progress.current_step == 0:
        return "not started"
    if progress.is_assessment_complete:
        return "assessment complete"
    pct = round(progress.current_step / progress.total_steps * 100)
    if pct < 50:
        return f"{pct}% complete (early stage)"
    return f"{pct}% complete (in progress)"
