"""Tests for the evidence/score model."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from ideapilot.schemas import ChecklistItem, Evidence, Idea
from ideapilot.scoring import (
    bucket_for,
    compute_progress,
    derive_scores,
    evidence_strength,
    idea_progress_label,
    top_improvement_opportunity,
)

TS = "2025-01-01T00:00:00+00:00"


def _ev(**kw) -> Evidence:
    return Evidence(evidence_id=kw.pop("evidence_id", "e1"), timestamp=TS, **kw)


def _scored(score, evidence=()) -> ChecklistItem:
    return ChecklistItem(score=score, evidence=list(evidence))


def _idea(checklist=None) -> Idea:
    return Idea(idea_id="i1", title="Pet Fitness", created_at=TS, updated_at=TS, checklist=checklist)


class TestEvidenceStrength:
    def test_no_evidence_is_zero(self):
        assert evidence_strength([]) == 0

    def test_single_low_confidence_item_is_one(self):
        assert evidence_strength([_ev(confidence=0.3)]) == 1

    def test_item_without_confidence_is_one(self):
        assert evidence_strength([_ev()]) == 1

    def test_high_confidence_alone_is_two(self):
        assert evidence_strength([_ev(type="conversation", value="users love it", confidence=0.9)]) == 2

    def test_volume_alone_is_two(self):
        items = [_ev(evidence_id=f"e{i}", confidence=0.2) for i in range(5)]
        assert evidence_strength(items) == 2

    def test_four_items_are_not_enough_volume(self):
        items = [_ev(evidence_id=f"e{i}", confidence=0.2) for i in range(4)]
        assert evidence_strength(items) == 1

    def test_metrics_with_high_confidence_is_three(self):
        assert evidence_strength([_ev(type="metrics", value="120 signups", confidence=0.85)]) == 3

    def test_numeric_value_counts_as_quantitative_at_point_seven(self):
        items = [
            _ev(evidence_id="a", value=42, confidence=0.7),
            _ev(evidence_id="b", value="strong quote", confidence=0.8),
        ]
        assert evidence_strength(items) == 3

    def test_numeric_value_below_point_seven_is_not_quantitative(self):
        items = [
            _ev(evidence_id="a", value=42, confidence=0.6),
            _ev(evidence_id="b", value="strong quote", confidence=0.8),
        ]
        assert evidence_strength(items) == 2

    def test_boolean_value_is_not_numeric(self):
        items = [_ev(value=True, confidence=0.9)]
        assert evidence_strength(items) == 2


class TestDerivedScores:
    def test_empty_checklist_is_unknown(self):
        derived = derive_scores({})
        assert derived.potential_score == 0
        assert derived.actualization_score == 0
        assert derived.potential_bucket == "unknown"
        assert derived.actualization_bucket == "unknown"

    def test_full_potential_is_green(self):
        checklist = {k: _scored(5) for k in (
            "problem_clarity", "market_pain_mentions", "outcome_gap", "competitive_moat",
            "team_solution_fit", "solution_evidence", "team_market_fit",
        )}
        derived = derive_scores(checklist)
        assert derived.potential_score == 100
        assert derived.potential_bucket == "green"
        assert derived.actualization_bucket == "unknown"

    def test_missing_scores_count_as_zero_and_round(self):
        checklist = {k: _scored(3) for k in (
            "problem_clarity", "market_pain_mentions", "outcome_gap", "competitive_moat",
        )}
        derived = derive_scores(checklist)
        # 12 / 35 * 100 = 34.28...
        assert derived.potential_score == 34
        assert derived.potential_bucket == "red"

    def test_coverage_floor_is_half_rounded_up(self):
        one = derive_scores({"early_demand": _scored(5)})
        assert one.actualization_score == 33
        assert one.actualization_bucket == "unknown"

        two = derive_scores({"early_demand": _scored(5), "traffic_authority": _scored(5)})
        assert two.actualization_score == 67
        assert two.actualization_bucket == "yellow"

    def test_evidence_without_score_counts_as_coverage(self):
        checklist = {
            "early_demand": _scored(5),
            "traffic_authority": ChecklistItem(evidence=[_ev()]),
        }
        derived = derive_scores(checklist)
        assert derived.actualization_score == 33
        assert derived.actualization_bucket == "red"

    @pytest.mark.parametrize("score,bucket", [(70, "green"), (69, "yellow"), (40, "yellow"), (39, "red"), (0, "red")])
    def test_bucket_thresholds(self, score, bucket):
        assert bucket_for(score, covered=3, n=3) == bucket


class TestChecklistValidation:
    @pytest.mark.parametrize("raw,expected", [(7, 5), (-1, 0), (3.6, 4), (None, None)])
    def test_score_is_clamped(self, raw, expected):
        assert ChecklistItem(score=raw).score == expected

    def test_partial_checklist_is_filled(self):
        idea = _idea({"early_demand": {"score": 2}})
        assert len(idea.checklist) == 10
        assert idea.checklist["early_demand"].score == 2
        assert idea.checklist["problem_clarity"].score is None

    def test_unknown_factor_rejected(self):
        with pytest.raises(ValidationError):
            _idea({"vibes": {"score": 5}})

    def test_stored_strength_is_ignored(self):
        assert ChecklistItem(evidence=[], evidence_strength=3).evidence_strength == 0
        item = ChecklistItem(evidence=[_ev(type="metrics", value="120 signups", confidence=0.9)], evidence_strength=0)
        assert item.evidence_strength == 3

    def test_derived_scores_follow_checklist(self):
        raw = {
            "idea_id": "i1", "created_at": TS, "updated_at": TS,
            "checklist": {k: {"score": 5} for k in (
                "problem_clarity", "market_pain_mentions", "outcome_gap", "competitive_moat",
                "team_solution_fit", "solution_evidence", "team_market_fit",
            )},
            "derived": {"potential_score": 3, "potential_bucket": "red"},
        }
        idea = Idea.model_validate(raw)
        assert idea.derived.potential_score == 100
        assert idea.derived.potential_bucket == "green"
        assert idea.derived.actualization_bucket == "unknown"


class TestProgress:
    def test_compute_progress(self):
        progress = compute_progress({"early_demand": _scored(3), "outcome_gap": _scored(0)})
        assert progress.current_step == 2
        assert progress.total_steps == 10
        assert progress.completed_factors == ["outcome_gap", "early_demand"]
        assert progress.is_assessment_complete is False

    def test_top_improvement_opportunity(self):
        checklist = {"early_demand": _scored(1), "outcome_gap": _scored(1), "problem_clarity": _scored(4)}
        assert top_improvement_opportunity(checklist) == {
            "factor": "outcome_gap", "label": "Outcome Gap", "score": 1,
        }
        assert top_improvement_opportunity({}) is None

    def test_idea_progress_labels(self):
        assert idea_progress_label(_idea()) == "not started"
        assert idea_progress_label(_idea({"early_demand": {"score": 2}})) == "10% complete (early stage)"
        five = {k: {"score": 3} for k in (
            "problem_clarity", "market_pain_mentions", "outcome_gap", "competitive_moat", "team_solution_fit",
        )}
        assert idea_progress_label(_idea(five)) == "50% complete (in progress)"
        full = {k: {"score": 3} for k in _idea().checklist}
        assert idea_progress_label(_idea(full)) == "assessment complete"
