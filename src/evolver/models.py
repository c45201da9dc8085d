from datetime import datetime, timezone
from typing import List, Dict, Any, Optional
import uuid
from pydantic import BaseModel, Field, field_serializer, model_validator
from enum import Enum

from . import config
from .errors import InvalidTransitionError


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==============================================================================
# STATUS ENUMS + TRANSITION TABLES (Feature: explicit-state-machines)
# ==============================================================================
# Each persisted entity has its own small state machine. Status fields are
# only ever changed through transition(), which rejects any move that is not
# listed in the entity's table.
# ==============================================================================
class EvaluationStatus(str, Enum):
    pending = "pending"      # Created, never started
    running = "running"      # Campaign loop is executing epochs
    paused = "paused"        # Stopped at an epoch boundary, resumable
    completed = "completed"  # Epoch budget exhausted or winner declared
    failed = "failed"        # An epoch failed; surfaced with its number


class EpochStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class TestRunStatus(str, Enum):
    __test__ = False

    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class SessionStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


EVALUATION_TRANSITIONS: Dict[EvaluationStatus, frozenset] = {
    EvaluationStatus.pending: frozenset({EvaluationStatus.running}),
    EvaluationStatus.running: frozenset({EvaluationStatus.paused, EvaluationStatus.completed, EvaluationStatus.failed}),
    # paused -> completed only through declare-winner
    EvaluationStatus.paused: frozenset({EvaluationStatus.running, EvaluationStatus.completed}),
    EvaluationStatus.completed: frozenset(),
    EvaluationStatus.failed: frozenset(),
}

EPOCH_TRANSITIONS: Dict[EpochStatus, frozenset] = {
    EpochStatus.pending: frozenset({EpochStatus.running, EpochStatus.failed}),
    EpochStatus.running: frozenset({EpochStatus.completed, EpochStatus.failed}),
    EpochStatus.completed: frozenset(),
    EpochStatus.failed: frozenset(),
}

TEST_RUN_TRANSITIONS: Dict[TestRunStatus, frozenset] = {
    TestRunStatus.pending: frozenset({TestRunStatus.running}),
    TestRunStatus.running: frozenset({TestRunStatus.completed, TestRunStatus.failed}),
    TestRunStatus.completed: frozenset(),
    TestRunStatus.failed: frozenset(),
}

SESSION_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.pending: frozenset({SessionStatus.running, SessionStatus.failed}),
    SessionStatus.running: frozenset({SessionStatus.completed, SessionStatus.failed}),
    SessionStatus.completed: frozenset(),
    SessionStatus.failed: frozenset(),
}

_TRANSITION_TABLES = {
    EvaluationStatus: EVALUATION_TRANSITIONS,
    EpochStatus: EPOCH_TRANSITIONS,
    TestRunStatus: TEST_RUN_TRANSITIONS,
    SessionStatus: SESSION_TRANSITIONS,
}


def can_transition(current: Enum, target: Enum) -> bool:
    table = _TRANSITION_TABLES[type(target)]
    return target in table[type(target)(current)]


def transition(entity: BaseModel, target: Enum) -> None:
    """Move entity.status to target, or raise InvalidTransitionError."""
    current = entity.status
    if not can_transition(current, target):
        raise InvalidTransitionError(type(entity).__name__, current, target)
    entity.status = target


class TargetMetric(str, Enum):
    accuracy = "accuracy"
    conversion = "conversion"


class Severity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class ChangeType(str, Enum):
    added = "added"
    modified = "modified"
    removed = "removed"
    restructured = "restructured"


class TurnRole(str, Enum):
    agent = "agent"      # The voice agent under test
    persona = "persona"  # The synthetic customer


# ========== Personas & Prompts ==========


class Persona(BaseModel):
    """Scripted customer behavior profile. Read-only input to sessions."""
    id: str = Field(default_factory=lambda: _new_id("persona"))
    name: str
    description: str = ""
    traits: List[str] = Field(default_factory=list)
    system_prompt: Optional[str] = Field(default=None, description="Behavior prompt for the synthetic customer")
    is_default: bool = False

    @property
    def behavior_prompt(self) -> str:
        return self.system_prompt or self.description


class PromptVersion(BaseModel):
    """Immutable prompt text plus lineage. Only run statistics are updated."""
    id: str = Field(default_factory=lambda: _new_id("prompt"))
    name: str = "Agent prompt"
    content: str
    version: int = 1
    parent_id: Optional[str] = Field(default=None, description="Prompt this version was derived from")
    # ==== RUN STATISTICS (Feature: prompt-run-stats) ====
    total_runs: int = 0
    avg_accuracy: Optional[float] = None
    avg_latency: Optional[float] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_serializer('created_at')
    def serialize_datetime(self, dt: Optional[datetime], _info):
        return dt.isoformat() if dt else None


# ========== Evaluation ==========


class EvaluationConfig(BaseModel):
    max_epochs: int = Field(default=5, ge=1)
    tests_per_epoch: int = Field(default=6, ge=1)
    persona_ids: List[str] = Field(..., min_length=1)
    concurrency: int = Field(default=config.DEFAULT_CONCURRENCY, ge=1)
    improvement_threshold: float = Field(default=2.0, ge=0)
    target_metric: TargetMetric = TargetMetric.accuracy
    conversion_goals: List[str] = Field(default_factory=list)
    max_turns: int = Field(default=config.MAX_TURNS, ge=1)
    max_duration_seconds: float = Field(default=config.MAX_DURATION_SECONDS, gt=0)


class StatusHistoryEntry(BaseModel):
    """A timestamped status message for campaign progress tracking."""
    timestamp: datetime = Field(default_factory=_utcnow)
    message: str
    epoch_number: Optional[int] = None

    @field_serializer('timestamp')
    def serialize_timestamp(self, dt: datetime, _info):
        return dt.isoformat()


# ==============================================================================
# EVALUATION MODEL
# ==============================================================================
# One optimization campaign. Best-so-far fields and current_epoch_number are
# written exclusively by the campaign controller.
# ==============================================================================
class Evaluation(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("eval"))
    name: str
    description: str = ""
    source_prompt_id: str
    voice_agent_id: str = Field(..., description="Remote voice agent the web calls are placed against")
    config: EvaluationConfig
    status: EvaluationStatus = EvaluationStatus.pending

    # ==== PROGRESS ====
    current_epoch_number: int = 0
    total_epochs: int = 0

    # ==== BEST SO FAR ====
    best_prompt_id: Optional[str] = None
    best_accuracy: Optional[float] = None
    best_conversion_rate: Optional[float] = None
    total_improvement: float = 0.0

    # ==== FAILURE SURFACE ====
    error_message: Optional[str] = None
    failed_epoch_number: Optional[int] = None

    # ==== REAL-TIME STATUS (Feature: status-updates) ====
    status_message: Optional[str] = None
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)

    # ==== TIMESTAMPS ====
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    def best_metric(self, metric: TargetMetric) -> Optional[float]:
        return self.best_conversion_rate if metric == TargetMetric.conversion else self.best_accuracy

    @field_serializer('created_at', 'started_at', 'completed_at', 'updated_at')
    def serialize_datetime(self, dt: Optional[datetime], _info):
        return dt.isoformat() if dt else None


class EvaluationCreate(BaseModel):
    name: str
    description: str = ""
    voice_agent_id: str
    source_prompt_id: Optional[str] = None
    source_prompt: Optional[str] = Field(default=None, description="Inline prompt text; stored as version 1")
    config: EvaluationConfig

    @model_validator(mode='after')
    def _exactly_one_source(self) -> 'EvaluationCreate':
        if bool(self.source_prompt_id) == bool(self.source_prompt):
            raise ValueError("Provide exactly one of source_prompt_id or source_prompt")
        return self


class DeclareWinnerRequest(BaseModel):
    epoch_id: str


# ========== Optimizer output ==========


class PromptChange(BaseModel):
    type: ChangeType
    section: str = Field(..., description="Prompt section that changed, e.g. 'Greeting', 'Tone'")
    description: str = ""
    before: Optional[str] = None
    after: Optional[str] = None


class PredictedImpact(BaseModel):
    accuracy: float = 0.0
    conversion: float = 0.0


class OptimizationResult(BaseModel):
    improved_prompt: str
    changes: List[PromptChange] = Field(default_factory=list)
    reasoning: str = ""
    predicted_impact: PredictedImpact = Field(default_factory=PredictedImpact)
    applied_suggestion_ids: List[str] = Field(default_factory=list)
    original_prompt: str = ""


class ImprovementRecord(BaseModel):
    """What the optimizer changed in an epoch, kept for trend display."""
    suggestion_ids: List[str] = Field(default_factory=list)
    changes: List[PromptChange] = Field(default_factory=list)
    reasoning: str = ""
    predicted_impact: PredictedImpact = Field(default_factory=PredictedImpact)
    original_prompt: str = ""
    improved_prompt: str = ""


# ========== Epoch ==========


class Epoch(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("epoch"))
    evaluation_id: str
    epoch_number: int = Field(..., ge=1)
    prompt_id: str = Field(..., description="Prompt version under test in this epoch")
    previous_epoch_id: Optional[str] = None
    test_run_id: Optional[str] = None
    status: EpochStatus = EpochStatus.pending

    accuracy: Optional[float] = None
    conversion_rate: Optional[float] = None
    avg_latency: Optional[float] = None
    accuracy_delta: Optional[float] = None
    conversion_delta: Optional[float] = None

    # None until the controller decides; set exactly once
    is_accepted: Optional[bool] = None
    improvement: Optional[float] = None
    resulting_prompt_id: Optional[str] = None
    improvement_applied: Optional[ImprovementRecord] = None
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def metric(self, metric: TargetMetric) -> Optional[float]:
        return self.conversion_rate if metric == TargetMetric.conversion else self.accuracy

    @field_serializer('created_at', 'started_at', 'completed_at')
    def serialize_datetime(self, dt: Optional[datetime], _info):
        return dt.isoformat() if dt else None


# ========== Test runs & sessions ==========


class TestRun(BaseModel):
    __test__ = False  # not a pytest class

    id: str = Field(default_factory=lambda: _new_id("run"))
    epoch_id: Optional[str] = None
    prompt_id: str
    status: TestRunStatus = TestRunStatus.pending
    concurrency: int = 1
    tests_per_persona: Dict[str, int] = Field(default_factory=dict)

    total_sessions: int = 0
    completed_sessions: int = 0
    failed_sessions: int = 0
    avg_accuracy: Optional[float] = None
    avg_latency: Optional[float] = None

    # ==== COST TRACKING (Feature: cost-attribution) ====
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    total_cost_usd: float = 0.0

    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_serializer('created_at', 'started_at', 'completed_at')
    def serialize_datetime(self, dt: Optional[datetime], _info):
        return dt.isoformat() if dt else None


class TranscriptTurn(BaseModel):
    role: TurnRole
    content: str
    timestamp_ms: int = Field(default=0, description="Milliseconds since the call started")
    latency_ms: Optional[float] = Field(default=None, description="Agent response latency for agent turns")
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None


class TestSession(BaseModel):
    """One synthetic voice call. Written only by its own session task."""
    __test__ = False

    id: str = Field(default_factory=lambda: _new_id("sess"))
    test_run_id: str
    persona_id: str
    instance_number: int = Field(..., ge=1)
    status: SessionStatus = SessionStatus.pending
    progress: float = 0.0

    transcript: List[TranscriptTurn] = Field(default_factory=list)
    turns: int = 0
    accuracy: Optional[float] = None
    avg_latency: Optional[float] = None
    errors: int = 0
    error_message: Optional[str] = None
    tokens_in: int = 0
    tokens_out: int = 0

    # ==== CALL ARTIFACTS (Feature: audio-archive) ====
    call_id: Optional[str] = None
    audio_url: Optional[str] = None
    audio_duration_seconds: Optional[float] = None
    duration_seconds: Optional[float] = None

    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_serializer('created_at', 'started_at', 'completed_at')
    def serialize_datetime(self, dt: Optional[datetime], _info):
        return dt.isoformat() if dt else None


class ProgressEvent(BaseModel):
    """Live progress for one session, delivered through a callback."""
    session_id: str
    state: str
    turns: int = 0
    progress: float = 0.0
    last_message: Optional[Dict[str, str]] = None
    error: Optional[str] = None


class SessionSettings(BaseModel):
    """Per-run call settings shared by every session task of a test run."""
    voice_agent_id: str
    max_turns: int = config.MAX_TURNS
    max_duration_seconds: float = config.MAX_DURATION_SECONDS


# ========== Analysis ==========


class IssueFrequency(BaseModel):
    issue: str
    count: int = 1
    severity: Severity = Severity.medium


class MetricsRecord(BaseModel):
    """Per-persona aggregate for one epoch."""
    id: str = Field(default_factory=lambda: _new_id("metric"))
    epoch_id: str
    persona_id: str
    persona_name: str = ""
    accuracy: Optional[float] = None
    conversion_rate: Optional[float] = None
    avg_latency: Optional[float] = None
    sessions_count: int = 0
    conversions: int = 0
    conversion_opportunities: int = 0
    issues: List[IssueFrequency] = Field(default_factory=list)


class SuggestionEvidence(BaseModel):
    session_ids: List[str] = Field(default_factory=list)
    examples: List[str] = Field(default_factory=list)


class HealingSuggestion(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("sugg"))
    test_run_id: str
    prompt_id: str
    persona_id: Optional[str] = None
    issue: str
    suggestion: str
    suggested_prompt: Optional[str] = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    severity: Severity = Severity.medium
    evidence: SuggestionEvidence = Field(default_factory=SuggestionEvidence)
    is_applied: bool = False
    applied_at: Optional[datetime] = None
    resulting_prompt_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_serializer('applied_at', 'created_at')
    def serialize_datetime(self, dt: Optional[datetime], _info):
        return dt.isoformat() if dt else None


class ConversionResult(BaseModel):
    achieved: bool = False
    score: float = 0.0
    missed_opportunities: List[str] = Field(default_factory=list)
    recommended_actions: List[str] = Field(default_factory=list)


class SnapshotPersona(BaseModel):
    id: str
    name: str
    description: str = ""
    traits: List[str] = Field(default_factory=list)


class SnapshotData(BaseModel):
    prompt_version: str
    persona: SnapshotPersona
    transcript: List[TranscriptTurn] = Field(default_factory=list)
    metrics: Dict[str, Optional[float]] = Field(default_factory=dict)
    conversion_result: Dict[str, Any] = Field(default_factory=dict)
    environment: Dict[str, Any] = Field(default_factory=dict)


class Snapshot(BaseModel):
    """Replayable record of one session. Append-only."""
    id: str = Field(default_factory=lambda: _new_id("snap"))
    epoch_id: str
    test_session_id: str
    data: SnapshotData
    created_at: datetime = Field(default_factory=_utcnow)

    @field_serializer('created_at')
    def serialize_datetime(self, dt: datetime, _info):
        return dt.isoformat()


# ========== Orchestration results (not persisted) ==========


class RunSummary(BaseModel):
    test_run_id: str
    status: TestRunStatus
    total_sessions: int
    completed_sessions: int
    failed_sessions: int
    avg_accuracy: Optional[float] = None
    avg_latency: Optional[float] = None
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    total_cost_usd: float = 0.0


class EpochAnalysis(BaseModel):
    epoch_id: str
    metrics: List[MetricsRecord] = Field(default_factory=list)
    snapshot_ids: List[str] = Field(default_factory=list)
    suggestions: List[HealingSuggestion] = Field(default_factory=list)
    accuracy: Optional[float] = None
    conversion_rate: Optional[float] = None
    avg_latency: Optional[float] = None


class EpochRequest(BaseModel):
    epoch_id: str
    evaluation_id: str
    epoch_number: int
    prompt_id: str
    voice_agent_id: str
    previous_epoch_id: Optional[str] = None
    config: EvaluationConfig


class EpochOutcome(BaseModel):
    epoch_id: str
    test_run_id: str
    accuracy: Optional[float] = None
    conversion_rate: Optional[float] = None
    avg_latency: Optional[float] = None
    resulting_prompt_id: str
    optimization: OptimizationResult


class CampaignResult(BaseModel):
    evaluation_id: str
    status: EvaluationStatus
    completed_epochs: int = 0
    best_prompt_id: Optional[str] = None
    best_accuracy: Optional[float] = None
    best_conversion_rate: Optional[float] = None
    failed_epoch_number: Optional[int] = None
    error: Optional[str] = None
