"""Pydantic domain and request/response schemas for the ideapilot runtime."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

Mode = Literal["onboarding", "integration", "plan", "act"]
MODES: tuple[str, ...] = ("onboarding", "integration", "plan", "act")

FactorKey = Literal[
    "problem_clarity",
    "market_pain_mentions",
    "outcome_gap",
    "competitive_moat",
    "team_solution_fit",
    "solution_evidence",
    "team_market_fit",
    "early_demand",
    "traffic_authority",
    "marketing_product_fit",
]

POTENTIAL_FACTORS: tuple[str, ...] = (
    "problem_clarity",
    "market_pain_mentions",
    "outcome_gap",
    "competitive_moat",
    "team_solution_fit",
    "solution_evidence",
    "team_market_fit",
)
ACTUALIZATION_FACTORS: tuple[str, ...] = (
    "early_demand",
    "traffic_authority",
    "marketing_product_fit",
)
FACTOR_KEYS: tuple[str, ...] = POTENTIAL_FACTORS + ACTUALIZATION_FACTORS

EvidenceType = Literal[
    "manual_input", "auto_fetch", "peer_proof", "prospect_pulse", "seo_metric",
    "social_metric", "survey_response", "conversation", "user_statement",
    "market_research", "competitive_analysis", "demo_feedback", "metrics", "other",
]
InsightType = Literal[
    "user_quote", "market_insight", "competitive_intel", "user_behavior",
    "pain_point", "solution_feedback", "other",
]
Stage = Literal["concept", "pre-MVP", "MVP", "post-launch"]
Bucket = Literal["unknown", "red", "yellow", "green"]
InvocationState = Literal["proposed", "awaiting-confirmation", "approved", "denied", "executed"]


class _CamelModel(BaseModel):
    """Wire models exposed to clients use camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------


class Evidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    evidence_id: str
    type: EvidenceType = "conversation"
    source: str = "conversation"
    value: Any = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    notes: str | None = None
    reasoning: str | None = None
    timestamp: str
    added_by: Literal["agent", "system", "user"] = "agent"


class ChecklistItem(BaseModel):
    score: int | None = None
    evidence_strength: int = Field(default=0, ge=0, le=3)
    evidence: list[Evidence] = []
    last_scored_at: str | None = None

    @field_validator("score", mode="before")
    @classmethod
    def clamp_score(cls, v: Any) -> int | None:
        if v is None:
            return None
        return max(0, min(5, int(round(float(v)))))

    @model_validator(mode="after")
    def strength_from_evidence(self) -> ChecklistItem:
        from ideapilot.scoring import evidence_strength

        self.evidence_strength = evidence_strength(self.evidence)
        return self


def empty_checklist() -> dict[str, ChecklistItem]:
    return {key: ChecklistItem() for key in FACTOR_KEYS}


class DerivedScores(BaseModel):
    potential_score: int = Field(default=0, ge=0, le=100)
    actualization_score: int = Field(default=0, ge=0, le=100)
    potential_bucket: Bucket = "unknown"
    actualization_bucket: Bucket = "unknown"


class ConversationInsight(BaseModel):
    id: str
    type: InsightType
    content: str
    factor_related: FactorKey | None = None
    confidence_level: float | None = None
    timestamp: str


class Idea(BaseModel):
    idea_id: str
    title: str = "Untitled Idea"
    one_liner: str = Field(default="", max_length=140)
    description: str = ""
    stage: Stage = "concept"
    founder_background: str | None = None
    target_market: str | None = None
    business_model: str | None = None
    conversation_insights: list[ConversationInsight] = []
    metrics: dict[str, Any] = {}
    checklist: dict[FactorKey, ChecklistItem] = Field(default_factory=empty_checklist)
    derived: DerivedScores = Field(default_factory=DerivedScores)
    recommended_tweak: str | None = None
    created_at: str
    updated_at: str

    @field_validator("checklist", mode="before")
    @classmethod
    def exactly_canonical_factors(cls, v: Any) -> Any:
        if v is None:
            return empty_checklist()
        if not isinstance(v, dict):
            raise ValueError("checklist must be a mapping of factor keys")
        unknown = set(v) - set(FACTOR_KEYS)
        if unknown:
            raise ValueError(f"unknown checklist factors: {sorted(unknown)}")
        return {key: v.get(key) or {} for key in FACTOR_KEYS}

    @model_validator(mode="after")
    def scores_from_checklist(self) -> Idea:
        from ideapilot.scoring import derive_scores

        self.derived = derive_scores(self.checklist)
        return self


class AssessmentProgress(BaseModel):
    current_step: int = 0
    total_steps: int = len(FACTOR_KEYS)
    completed_factors: list[FactorKey] = []
    is_assessment_complete: bool = False


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class Operator(BaseModel):
    name: str
    role: str = "primary"
    email: str | None = None


class AdminContact(BaseModel):
    name: str = ""
    email: str = ""


class SessionSettings(BaseModel):
    language: str = "en"
    operators: list[Operator] = []
    admin_contact: AdminContact = Field(default_factory=AdminContact)
    current_user: str | None = None


class Profile(BaseModel):
    id: str
    email: str = ""
    credits: float = 0.0
    payment_method: str = "credits"


class Credential(BaseModel):
    token: str
    profile: Profile
    verified_at: str | None = None


class SessionState(BaseModel):
    mode: Mode = "onboarding"
    settings: SessionSettings = Field(default_factory=SessionSettings)
    credential: Credential | None = None

    ideas: dict[str, Idea] = {}
    current_idea_id: str | None = None
    assessment_progress: AssessmentProgress = Field(default_factory=AssessmentProgress)

    onboarding_step: str = "start"
    is_onboarding_complete: bool = False

    test_results: dict[str, dict[str, Any]] = {}
    tool_documentation: dict[str, dict[str, Any]] = {}
    test_report: dict[str, Any] | None = None
    is_integration_complete: bool = False

    last_mode_change: str | None = None
    imported_from: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @model_validator(mode="after")
    def current_idea_is_member(self) -> SessionState:
        if self.current_idea_id is not None and self.current_idea_id not in self.ideas:
            self.current_idea_id = None
        return self

    @property
    def current_idea(self) -> Idea | None:
        if self.current_idea_id is None:
            return None
        return self.ideas.get(self.current_idea_id)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class ToolInvocation(_CamelModel):
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = {}
    state: InvocationState = "proposed"
    result: Any = None


class ChatMessage(_CamelModel):
    id: str
    role: Literal["user", "assistant", "system"]
    content: str = ""
    parts: list[dict[str, Any]] = []
    created_at: str


# ---------------------------------------------------------------------------
# HTTP request / response bodies
# ---------------------------------------------------------------------------


class StoreUserInfo(BaseModel):
    user_id: str
    api_key: str
    email: str = ""
    credits: float = 0.0
    payment_method: str = "credits"


class SetModeRequest(_CamelModel):
    mode: str
    force: bool = False
    is_after_clear_history: bool = False


class ModeChangeOut(_CamelModel):
    success: bool = True
    previous_mode: Mode
    current_mode: Mode
    changed: bool
    last_mode_change: str | None = None


class ChatRequest(BaseModel):
    message: str


class ConfirmRequest(_CamelModel):
    call_id: str
    approved: bool


class ImportOptions(_CamelModel):
    preserve_session_id: bool = False
    include_messages: bool = True
    include_scheduled_tasks: bool = True


class ImportResult(_CamelModel):
    success: bool = True
    session_id: str
    source_session_id: str | None = None
    tables_imported: list[str] = []
    records_imported: int = 0
    rows_per_table: dict[str, int] = {}
    warnings: list[str] = []
    updated_state: bool = False
