from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Indicator(BaseModel):
    name: str
    value: str | float | None = None
    unit: str | None = None
    accuracy: str | None = None
    reference_range: str | None = None


class LabAnalysis(BaseModel):
    name: str
    description: str | None = None
    date: str | None = None
    indicators: list[Indicator] = Field(default_factory=list)


class PatientInfo(BaseModel):
    gender: str | None = None
    date_of_birth: str | None = None
    race: str | None = None
    ethnicity: str | None = None
    diagnosis: list[str] = Field(default_factory=list)
    chronic_diseases: list[str] = Field(default_factory=list)
    additional_information: str | None = None


class PatientAnalyzeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str | None = None
    patient: PatientInfo = Field(default_factory=PatientInfo)
    user_comments: str | None = None
    analyses: list[LabAnalysis] = Field(default_factory=list)


class MedicalContext(BaseModel):
    thinking_scratchpad: str = ""
    is_medical: bool
    requires_complex_analysis: bool = False
    reason: str = ""
    queries: list[str] = Field(default_factory=list)


class RelevanceEvaluation(BaseModel):
    relevance_level: str
    score: float = Field(ge=0.0, le=1.0)
    relevant_chunk_ids: list[str] = Field(default_factory=list)
    reasoning: str = ""


class AnalysisSummary(BaseModel):
    status: str
    short_conclusion: str


class Hypothesis(BaseModel):
    condition: str
    confidence: str
    rationale: str


class RecommendationItem(BaseModel):
    action: str
    priority: str
    protocol_reference: str | None = None
    source_type: str | None = None
    reasoning: str | None = None


class ActionPlan(BaseModel):
    diagnostics: list[RecommendationItem] = Field(default_factory=list)
    consultations: list[RecommendationItem] = Field(default_factory=list)
    lifestyle_and_therapy: list[RecommendationItem] = Field(default_factory=list)


class Reference(BaseModel):
    source_id: str
    title: str


class MedicalAnalysis(BaseModel):
    summary: AnalysisSummary
    key_findings: list[str] = Field(default_factory=list)
    hypotheses: list[Hypothesis] = Field(default_factory=list)
    plan: ActionPlan = Field(default_factory=ActionPlan)
    references: list[Reference] = Field(default_factory=list)
    formatted_report: str | None = None
