"""
MESSAI MLOps Domain Models

Pydantic models for every entity the components own. Cross-component
references are plain ids; no model embeds another component's entity.

Ownership:
  - Registry:      ModelVersion, ModelArtifact
  - Training:      TrainingJob
  - Monitor:       Alert, PerformanceBucket, MonitorThresholds
  - Feature Store: FeatureGroup, FeatureView, FeatureVector
  - Graph:         KnowledgeNode, KnowledgeEdge
  - Orchestrator:  MLWorkflow, WorkflowStep, Deployment
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(ts: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class DomainModel(BaseModel):
    model_config = ConfigDict(validate_assignment=True, protected_namespaces=())

    @field_validator("*", mode="after")
    @classmethod
    def _utc_timestamps(cls, value: Any) -> Any:
        return as_utc(value) if isinstance(value, datetime) else value


# ─── Shared ─────────────────────────────────────────────────────────────────


class TimeWindow(BaseModel):
    """Closed interval [start, end] used by drift, reports and history queries."""

    start: datetime
    end: datetime

    @field_validator("start", "end", mode="after")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _ordered(self) -> "TimeWindow":
        if self.end < self.start:
            raise ValueError("window end must not precede start")
        return self

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end

    @property
    def minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


# ─── Model Registry ─────────────────────────────────────────────────────────


class ModelType(str, Enum):
    CLASSIFICATION = "classification"
    REGRESSION = "regression"
    CLUSTERING = "clustering"
    ANOMALY_DETECTION = "anomaly_detection"


class ModelStatus(str, Enum):
    TRAINING = "training"
    VALIDATION = "validation"
    PRODUCTION = "production"
    DEPRECATED = "deprecated"


class ModelMetrics(DomainModel):
    accuracy: float = Field(ge=0, le=1)
    precision: float = Field(default=0.0, ge=0, le=1)
    recall: float = Field(default=0.0, ge=0, le=1)
    f1_score: float = Field(default=0.0, ge=0, le=1)
    mse: float | None = None
    rmse: float | None = None
    mae: float | None = None
    r2_score: float | None = None


class ModelVersion(DomainModel):
    id: str = Field(default_factory=new_id)
    name: str
    version: str
    model_type: ModelType
    framework: str
    status: ModelStatus = ModelStatus.VALIDATION
    metrics: ModelMetrics
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def major(self) -> int:
        head = self.version.split(".")[0]
        return int(head) if head.isdigit() else 0


class ModelArtifact(DomainModel):
    """Opaque serialized model. The registry never inspects `payload`."""

    model_id: str
    payload: bytes
    metadata: dict[str, Any] = Field(default_factory=dict)


# ─── Training ───────────────────────────────────────────────────────────────


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TrainingJob(DomainModel):
    id: str = Field(default_factory=new_id)
    model_id: str | None = None
    model_name: str
    model_type: ModelType
    status: JobStatus = JobStatus.PENDING
    progress: float = Field(default=0.0, ge=0, le=1)
    hyperparameters: dict[str, Any] = Field(default_factory=dict)
    metrics: ModelMetrics | None = None
    logs: list[str] = Field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None
    error: str | None = None


# ─── Feature Store ──────────────────────────────────────────────────────────


class FeatureType(str, Enum):
    NUMERICAL = "numerical"
    CATEGORICAL = "categorical"
    TEXT = "text"
    IMAGE = "image"
    TIME_SERIES = "time_series"


class FeatureDefinition(DomainModel):
    name: str
    type: FeatureType
    importance: float | None = Field(default=None, ge=0, le=1)
    description: str = ""


class FeatureGroup(DomainModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    features: list[FeatureDefinition]
    owner: str
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FeatureView(DomainModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    feature_groups: list[str]
    query: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FeatureVector(DomainModel):
    entity_id: str
    features: dict[str, Any]
    timestamp: datetime = Field(default_factory=utcnow)


class HistoricalDataset(DomainModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    features: list[FeatureDefinition]
    vectors: list[FeatureVector]
    samples: int
    version: str = "1.0.0"
    created_at: datetime = Field(default_factory=utcnow)


class DriftMethod(str, Enum):
    KOLMOGOROV_SMIRNOV = "kolmogorov_smirnov"
    POPULATION_STABILITY_INDEX = "population_stability_index"
    INSUFFICIENT_DATA = "insufficient_data"


class FeatureDriftResult(DomainModel):
    drift_score: float
    is_drift: bool
    method: DriftMethod
    baseline_count: int = 0
    comparison_count: int = 0


# ─── Monitoring ─────────────────────────────────────────────────────────────


class AlertType(str, Enum):
    PERFORMANCE = "performance"
    DRIFT = "drift"
    ANOMALY = "anomaly"
    ERROR = "error"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Alert(DomainModel):
    id: str = Field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:12]}")
    model_id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    resolved: bool = False
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class MonitorThresholds(DomainModel):
    accuracy_min: float = 0.8
    latency_max: float = 1000.0
    error_rate_max: float = 0.05
    throughput_min: float = 10.0


class PerformanceBucket(DomainModel):
    """Aggregated metrics for one model over one wall-clock minute."""

    model_id: str
    timestamp: datetime
    predictions: int = 0
    labeled: int = 0
    correct: int = 0
    accuracy: float = 0.0
    latency_samples: int = 0
    latency: float = 0.0
    throughput: float = 0.0
    errors: int = 0
    error_rate: float = 0.0
    custom: dict[str, float] = Field(default_factory=dict)


class DriftReport(DomainModel):
    model_id: str
    is_drift: bool
    drift_score: float
    affected_metrics: list[str] = Field(default_factory=list)
    deltas: dict[str, float] = Field(default_factory=dict)
    insufficient_data: bool = False
    alert_id: str | None = None


class PerformanceSummary(DomainModel):
    total_predictions: int = 0
    average_accuracy: float = 0.0
    average_latency: float = 0.0
    error_rate: float = 0.0
    uptime: float = 0.0


class PerformanceReport(DomainModel):
    model_id: str
    period: TimeWindow
    summary: PerformanceSummary
    trends: dict[str, list[float]] = Field(default_factory=dict)
    alerts: list[Alert] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


# ─── Knowledge Graph ────────────────────────────────────────────────────────


class NodeType(str, Enum):
    PAPER = "paper"
    CONCEPT = "concept"
    METHOD = "method"
    MATERIAL = "material"
    ORGANISM = "organism"
    APPLICATION = "application"


class RelationshipType(str, Enum):
    CITES = "cites"
    USES = "uses"
    EXTENDS = "extends"
    CONTRADICTS = "contradicts"
    RELATES_TO = "relates_to"
    APPLIES_TO = "applies_to"


class ResearchPaper(DomainModel):
    id: str = Field(default_factory=new_id)
    title: str
    authors: list[str] = Field(default_factory=list)
    abstract: str = ""
    published_date: datetime
    journal: str | None = None
    doi: str | None = None
    keywords: list[str] = Field(default_factory=list)
    citations: list[str] = Field(default_factory=list)


class KnowledgeNode(DomainModel):
    id: str = Field(default_factory=new_id)
    type: NodeType
    label: str
    properties: dict[str, Any] = Field(default_factory=dict)
    weight: float = 1.0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class KnowledgeEdge(DomainModel):
    id: str = Field(default_factory=new_id)
    source_id: str
    target_id: str
    relationship_type: RelationshipType
    weight: float = Field(default=1.0, gt=0)
    properties: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class PathResult(DomainModel):
    path: list[KnowledgeNode]
    edges: list[KnowledgeEdge]
    total_weight: float
    path_type: str


class RelatedConcept(DomainModel):
    node: KnowledgeNode
    distance: int
    relationship_path: list[RelationshipType]


class Community(DomainModel):
    id: str
    nodes: list[KnowledgeNode]
    central_nodes: list[KnowledgeNode]
    theme: str
    coherence_score: float


class CommunityResult(DomainModel):
    communities: list[Community]
    bridging_nodes: list[KnowledgeNode]
    iterations: int = 0
    converged: bool = False


class InsightCategory(str, Enum):
    TREND = "trend"
    GAP = "gap"
    OPPORTUNITY = "opportunity"
    METHODOLOGY = "methodology"
    MATERIAL = "material"


class ResearchInsight(DomainModel):
    id: str = Field(default_factory=new_id)
    title: str
    insight: str
    category: InsightCategory
    confidence: float = Field(ge=0, le=1)
    supporting_evidence: list[str] = Field(default_factory=list)
    related_papers: list[str] = Field(default_factory=list)
    related_nodes: list[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"
    EMERGING = "emerging"


class TrendGranularity(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class TopicTrend(DomainModel):
    topic: str
    direction: TrendDirection
    strength: float = Field(ge=0, le=1)
    slope: float
    counts: dict[str, int]  # period label → papers carrying the topic
    significance: str


class HotSpot(DomainModel):
    topic: str
    activity_score: float
    papers: int


class TrendAnalysis(DomainModel):
    granularity: TrendGranularity
    periods: list[str]
    papers: int
    trends: list[TopicTrend]
    emerging_topics: list[str]
    declining_topics: list[str]
    hot_spots: list[HotSpot]


class PaperImpact(DomainModel):
    paper_id: str
    title: str
    impact_score: float = Field(ge=0, le=1)
    citation_count: int
    citation_velocity: float
    influence_network: list[str] = Field(default_factory=list)


class Breakthrough(DomainModel):
    paper_id: str
    title: str
    breakthrough_score: float = Field(ge=0, le=1)
    novelty_factors: list[str]


class CrossDomainGroup(DomainModel):
    domains: list[str]
    paper_ids: list[str]


class ImpactAnalysis(DomainModel):
    high_impact_papers: list[PaperImpact]
    breakthroughs: list[Breakthrough]
    cross_domain: list[CrossDomainGroup]


class HypothesisStatus(str, Enum):
    GENERATED = "generated"
    REVIEWED = "reviewed"
    VALIDATED = "validated"
    REFUTED = "refuted"


class Hypothesis(DomainModel):
    id: str = Field(default_factory=new_id)
    title: str
    description: str
    confidence: float = Field(ge=0, le=1)
    evidence_papers: list[str] = Field(default_factory=list)
    research_gaps: list[str] = Field(default_factory=list)
    suggested_experiments: list[str] = Field(default_factory=list)
    source: str = "template"
    status: HypothesisStatus = HypothesisStatus.GENERATED
    generated_at: datetime = Field(default_factory=utcnow)


# ─── Workflows ──────────────────────────────────────────────────────────────


class StepType(str, Enum):
    DATA_PREPARATION = "data_preparation"
    TRAINING = "training"
    EVALUATION = "evaluation"
    DEPLOYMENT = "deployment"
    MONITORING = "monitoring"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class WorkflowStep(DomainModel):
    id: str = Field(default_factory=new_id)
    name: str
    type: StepType
    config: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    outputs: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    error: str | None = None


class MLWorkflow(DomainModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    steps: list[WorkflowStep]
    status: WorkflowStatus = WorkflowStatus.DRAFT
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def step(self, step_id: str) -> WorkflowStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class Environment(str, Enum):
    STAGING = "staging"
    PRODUCTION = "production"


class ScalingConfig(DomainModel):
    min_instances: int = 1
    max_instances: int = 10
    target_cpu_utilization: int = 70


class MonitoringConfig(DomainModel):
    enable_drift_detection: bool = True
    alert_thresholds: MonitorThresholds = Field(default_factory=MonitorThresholds)


class Deployment(DomainModel):
    id: str = Field(default_factory=new_id)
    model_id: str
    environment: Environment = Environment.STAGING
    scaling: ScalingConfig = Field(default_factory=ScalingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
