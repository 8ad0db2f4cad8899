"""Idea assessment tools.

The current idea is always a member of ``state.ideas``; every write here
updates the idea inside that mapping and moves ``current_idea_id`` with it.
"""
from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

from ideapilot.catalog import ToolContext, register
from ideapilot.schemas import (
    AssessmentProgress,
    ChecklistItem,
    ConversationInsight,
    Evidence,
    FactorKey,
    Idea,
    InsightType,
    SessionState,
    Stage,
)
from ideapilot.scoring import (
    compute_progress,
    derive_scores,
    evidence_strength,
    idea_progress_label,
    top_improvement_opportunity,
)
from ideapilot.state import DELETE
from ideapilot.utils import new_id

log = logging.getLogger(__name__)


def _put_idea(ctx: ToolContext, idea: Idea, **extra: Any) -> SessionState:
    ideas = dict(ctx.state.ideas)
    ideas[idea.idea_id] = idea
    update = {"ideas": ideas, "current_idea_id": idea.idea_id, **extra}
    return ctx.replace(ctx.state.model_copy(update=update))


def _require_current(ctx: ToolContext, action: str) -> Idea:
    idea = ctx.state.current_idea
    if idea is None:
        raise LookupError(f"No idea assessment in progress. Store idea information before {action}.")
    return idea


# ---------------------------------------------------------------------------
# storeIdeaInformation
# ---------------------------------------------------------------------------


class StoreIdeaParams(BaseModel):
    title: str | None = Field(default=None, description="The idea title/name")
    one_liner: str | None = Field(default=None, max_length=140, description="A concise one-line description")
    description: str | None = Field(default=None, description="Detailed description of the idea")
    stage: Stage | None = Field(default=None, description="Current development stage")
    founder_background: str | None = Field(default=None, description="Founder's relevant background and expertise")
    target_market: str | None = Field(default=None, description="Description of target market/customers")
    business_model: str | None = Field(default=None, description="How the business plans to make money")


@register(
    "storeIdeaInformation",
    "Store or update basic idea information extracted from user conversation",
    StoreIdeaParams,
)
async def store_idea_information(args: StoreIdeaParams, ctx: ToolContext) -> dict[str, Any]:
    now = ctx.now()
    fields = args.model_dump(exclude_none=True)
    # Empty strings from the model never overwrite stored values.
    fields = {k: v for k, v in fields.items() if v != ""}

    current = ctx.state.current_idea
    if current is None:
        idea = Idea(idea_id=new_id(), created_at=now, updated_at=now, **fields)
        _put_idea(ctx, idea, assessment_progress=AssessmentProgress())
        ctx.runtime.logger.info("Created idea %s (%s)", idea.idea_id, idea.title)
    else:
        idea = Idea.model_validate({**current.model_dump(), **fields, "updated_at": now})
        _put_idea(ctx, idea)

    return {"success": True, "message": f"Stored idea information: {idea.title}", "idea_id": idea.idea_id}


# ---------------------------------------------------------------------------
# storeConversationInsights
# ---------------------------------------------------------------------------


class InsightParams(BaseModel):
    insight_type: InsightType = Field(description="Type of insight being stored")
    content: str = Field(description="The insight content or quote")
    factor_related: FactorKey | None = Field(default=None, description="Which assessment factor this relates to")
    confidence_level: float | None = Field(default=None, ge=0, le=1, description="Confidence in this insight (0-1)")


@register(
    "storeConversationInsights",
    "Store important insights, quotes, or context from the conversation",
    InsightParams,
)
async def store_conversation_insights(args: InsightParams, ctx: ToolContext) -> dict[str, Any]:
    idea = _require_current(ctx, "storing insights")
    now = ctx.now()
    insight = ConversationInsight(
        id=new_id(),
        type=args.insight_type,
        content=args.content,
        factor_related=args.factor_related,
        confidence_level=args.confidence_level,
        timestamp=now,
    )
    _put_idea(ctx, idea.model_copy(update={
        "conversation_insights": [*idea.conversation_insights, insight],
        "updated_at": now,
    }))
    preview = args.content if len(args.content) <= 50 else f"{args.content[:50]}..."
    return {"success": True, "message": f"Stored {args.insight_type}: {preview}", "insight_id": insight.id}


# ---------------------------------------------------------------------------
# updateFactorScore
# ---------------------------------------------------------------------------


class FactorScoreParams(BaseModel):
    factor: FactorKey = Field(description="The factor to update")
    score: float = Field(ge=0, le=5, description="The score (0-5) for this factor")
    reasoning: str = Field(description="Explanation of why this score was given")
    evidence_type: Literal[
        "conversation", "user_statement", "market_research", "competitive_analysis",
        "demo_feedback", "metrics", "other",
    ] = Field(description="Type of evidence supporting this score")
    evidence_value: Any = Field(default=None, description="The evidence data/value from the conversation")
    evidence_source: str | None = Field(default=None, description="Source of the evidence")
    evidence_notes: str | None = Field(default=None, description="Additional notes about the evidence")
    confidence: float | None = Field(default=None, ge=0, le=1, description="Confidence level in the evidence (0-1)")


@register(
    "updateFactorScore",
    "Update a specific factor score and add supporting evidence based on conversation",
    FactorScoreParams,
)
async def update_factor_score(args: FactorScoreParams, ctx: ToolContext) -> dict[str, Any]:
    idea = _require_current(ctx, "scoring factors")
    now = ctx.now()
    evidence = Evidence(
        evidence_id=new_id(),
        type=args.evidence_type,
        source=args.evidence_source or "conversation",
        value=args.evidence_value,
        confidence=args.confidence,
        notes=args.evidence_notes,
        reasoning=args.reasoning,
        timestamp=now,
        added_by="agent",
    )
    entries = [*idea.checklist[args.factor].evidence, evidence]
    item = ChecklistItem(
        score=args.score,
        evidence=entries,
        evidence_strength=evidence_strength(entries),
        last_scored_at=now,
    )
    checklist = {**idea.checklist, args.factor: item}
    derived = derive_scores(checklist)
    progress = compute_progress(checklist)

    _put_idea(
        ctx,
        idea.model_copy(update={"checklist": checklist, "derived": derived, "updated_at": now}),
        assessment_progress=progress,
    )
    ctx.runtime.logger.info("Scored %s=%s on idea %s", args.factor, item.score, idea.idea_id)
    return {
        "success": True,
        "message": f"Updated {args.factor} score to {item.score}/5 - {args.reasoning}",
        "factor": args.factor,
        "score": item.score,
        "evidence_strength": item.evidence_strength,
        "derived_scores": derived.model_dump(),
        "progress": progress.model_dump(),
    }


# ---------------------------------------------------------------------------
# Reading, switching and deleting ideas
# ---------------------------------------------------------------------------


@register("getAssessmentState", "Get the current idea assessment progress and scores")
async def get_assessment_state(args: BaseModel, ctx: ToolContext) -> dict[str, Any]:
    state = ctx.state
    idea = state.current_idea
    others = [
        {"idea_id": i.idea_id, "title": i.title, "status": idea_progress_label(i)}
        for i in state.ideas.values()
        if idea is None or i.idea_id != idea.idea_id
    ]
    if idea is None:
        return {
            "hasAssessment": False,
            "message": "No idea assessment in progress. Start by describing your startup idea.",
            "otherIdeas": others,
        }
    return {
        "hasAssessment": True,
        "idea": {
            "idea_id": idea.idea_id,
            "title": idea.title,
            "one_liner": idea.one_liner,
            "stage": idea.stage,
            "derived": idea.derived.model_dump(),
            "founder_background": idea.founder_background,
            "target_market": idea.target_market,
            "business_model": idea.business_model,
        },
        "progress": state.assessment_progress.model_dump(),
        "topImprovementOpportunity": top_improvement_opportunity(idea.checklist),
        "conversation_insights": [i.model_dump() for i in idea.conversation_insights],
        "otherIdeas": others,
    }


class SelectIdeaParams(BaseModel):
    idea_id: str = Field(description="ID of the idea to select, or 'new' for starting a new idea")
    reason: str | None = Field(default=None, description="Why switching to this idea")


@register(
    "selectIdea",
    "Select which idea to focus the conversation on, or start working on a new idea",
    SelectIdeaParams,
)
async def select_idea(args: SelectIdeaParams, ctx: ToolContext) -> str:
    if args.idea_id == "new":
        ctx.apply({"current_idea_id": None, "assessment_progress": AssessmentProgress().model_dump()})
        return (
            "Ready to work on a new idea. Please describe your startup concept "
            "and I'll guide you through the assessment."
        )

    idea = ctx.state.ideas.get(args.idea_id)
    if idea is None:
        available = ", ".join(f'"{i.title}" ({i.idea_id})' for i in ctx.state.ideas.values()) or "none"
        raise LookupError(f"Idea not found. Available ideas: {available}")

    ctx.apply({
        "current_idea_id": idea.idea_id,
        "assessment_progress": compute_progress(idea.checklist).model_dump(),
    })
    reason = f" ({args.reason})" if args.reason else ""
    return (
        f'Now focusing on "{idea.title}"{reason}. Current status: {idea_progress_label(idea)}. '
        "How would you like to continue working on this idea?"
    )


class DeleteIdeaParams(BaseModel):
    idea_id: str = Field(description="ID of the idea to delete")
    confirm: bool = Field(default=False, description="Must be true to actually delete the idea")


@register("deleteIdea", "Permanently delete an idea and its assessment", DeleteIdeaParams)
async def delete_idea(args: DeleteIdeaParams, ctx: ToolContext) -> dict[str, Any]:
    if not args.confirm:
        raise ValueError("Deleting an idea requires confirm=true")
    idea = ctx.state.ideas.get(args.idea_id)
    if idea is None:
        raise LookupError(f"Idea not found: {args.idea_id}")

    patch: dict[str, Any] = {"ideas": {idea.idea_id: DELETE}}
    if ctx.state.current_idea_id == idea.idea_id:
        patch["current_idea_id"] = None
        patch["assessment_progress"] = AssessmentProgress().model_dump()
    ctx.apply(patch)
    ctx.runtime.logger.info("Deleted idea %s", idea.idea_id)
    return {"success": True, "message": f'Deleted idea "{idea.title}"', "idea_id": idea.idea_id}
