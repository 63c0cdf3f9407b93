"""
AutoCrisp Design Service - Data Models

Pydantic contracts for:
- Task graph and run lifecycle
- Agent outputs (plan, guides, final summary)
- Progress notifications
- API request/response payloads
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskCategory(str, Enum):
    EXPERIMENT_PLANNING = "experiment_planning"
    GUIDE_DESIGN = "guide_design"
    RISK_ASSESSMENT = "risk_assessment"
    PROTOCOL_GENERATION = "protocol_generation"
    AUXILIARY = "auxiliary"


ESSENTIAL_CATEGORIES = frozenset(
    {
        TaskCategory.EXPERIMENT_PLANNING,
        TaskCategory.GUIDE_DESIGN,
        TaskCategory.RISK_ASSESSMENT,
    }
)


class OfftargetRisk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProgressStatus(str, Enum):
    THINKING = "thinking"
    COMPLETE = "complete"


class RunOutcome(str, Enum):
    ALL_TASKS_FINISHED = "all_tasks_finished"
    ESSENTIALS_COMPLETE = "essentials_complete"
    STALLED = "stalled"
    ITERATION_BUDGET_EXHAUSTED = "iteration_budget_exhausted"


# =============================================================================
# TASK GRAPH MODELS
# =============================================================================


class Task(BaseModel):
    id: str
    type: str
    category: TaskCategory
    assignee: str
    priority: int = Field(default=3, ge=1, le=5)
    dependencies: List[str] = Field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[Any] = None

    @property
    def is_essential(self) -> bool:
        return self.category in ESSENTIAL_CATEGORIES

    @property
    def is_terminal(self) -> bool:
        return self.status in {TaskStatus.COMPLETED, TaskStatus.FAILED}


class TaskTrace(BaseModel):
    task_id: str
    type: str
    category: TaskCategory
    assignee: str
    status: TaskStatus
    error: Optional[str] = None


# =============================================================================
# AGENT OUTPUT MODELS
# =============================================================================


class PlanObject(BaseModel):
    gene: str
    region: str
    edit_type: str
    cell_line: str
    nuclease: str
    confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    rationale: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return 0.85
        return max(0.0, min(1.0, numeric))


class Guide(BaseModel):
    id: str
    sequence: str
    start: int
    end: int
    efficiency: float = Field(ge=0.0, le=1.0)
    offtarget_risk: OfftargetRisk
    gc_content: float
    pam_site: Optional[str] = None
    strand: Optional[str] = None
    risk_score: Optional[float] = None
    predicted_offtargets: Optional[int] = None
    risk_factors: Optional[List[str]] = None


class FinalSummary(BaseModel):
    plan: Optional[PlanObject] = None
    total_guides: int = 0
    recommended_guides: List[Guide] = Field(default_factory=list)
    medium_risk_guides: List[Guide] = Field(default_factory=list)
    high_risk_guides: List[Guide] = Field(default_factory=list)
    best_guide: Guide
    protocol: str
    risk_summary: str
    next_steps: List[str] = Field(default_factory=list)


class ProgressNotification(BaseModel):
    id: int
    agent: str
    status: ProgressStatus
    message: str
    timestamp: datetime = Field(default_factory=utc_now)


class DesignResult(BaseModel):
    plan: PlanObject
    guides: List[Guide] = Field(default_factory=list)
    summary: FinalSummary


class DesignRun(BaseModel):
    run_id: str
    prompt: str
    outcome: RunOutcome
    iterations: int
    result: DesignResult
    messages: List[ProgressNotification] = Field(default_factory=list)
    traces: List[TaskTrace] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# COMPLETION SERVICE MODELS
# =============================================================================


class ChatMessage(BaseModel):
    role: str
    content: str


class CompletionRequest(BaseModel):
    model: str
    messages: List[ChatMessage]
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=500, ge=1)
    json_mode: bool = False


# =============================================================================
# API MODELS
# =============================================================================


class DesignRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=2000)


class DesignResponse(BaseModel):
    success: bool
    run_id: str
    outcome: RunOutcome
    iterations: int
    plan: PlanObject
    guides: List[Guide] = Field(default_factory=list)
    summary: FinalSummary
    messages: List[ProgressNotification] = Field(default_factory=list)
    traces: List[TaskTrace] = Field(default_factory=list)


class ExamplePromptsResponse(BaseModel):
    success: bool
    prompts: List[str] = Field(default_factory=list)


class DesignRunListResponse(BaseModel):
    success: bool
    run_ids: List[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    service: str
    completion_mode: str
    model_name: str
    max_iterations: int
    max_concurrent_tasks: int
    timestamp: datetime = Field(default_factory=utc_now)


# =============================================================================
# SCHEMA CHECK HELPERS
# =============================================================================


def validate_structured_output(model_cls: Any, payload: Dict[str, Any]) -> Any:
    """
    Strict schema gate used after any LLM/tool output.
    Raises pydantic ValidationError on mismatches.
    """
    return model_cls.model_validate(payload)
