"""
Platform handle — one explicit bundle of component instances.

Nothing here is module-global: build_platform() wires a fresh set of
components per process or tenant, and callers pass the handle around
(the API keeps it on app.state).
"""

from dataclasses import dataclass

import structlog

from alerts.engine import AlertEngine
from core.config import Settings, get_settings
from ml.backends import LinearBaselineBackend, ModelBackend
from ml.feature_store import FeatureStore
from ml.monitoring import ModelMonitor
from ml.orchestrator import WorkflowOrchestrator
from ml.registry import ModelRegistry
from ml.training import TrainingPipeline
from research.insights import InsightEngine
from research.knowledge_graph import KnowledgeGraph
from research.providers import HttpLiteratureProvider, LiteratureProvider

logger = structlog.get_logger()


@dataclass
class MLOpsPlatform:
    settings: Settings
    registry: ModelRegistry
    feature_store: FeatureStore
    alerts: AlertEngine
    monitor: ModelMonitor
    training: TrainingPipeline
    orchestrator: WorkflowOrchestrator
    graph: KnowledgeGraph
    insights: InsightEngine


def build_platform(
    settings: Settings | None = None,
    backend: ModelBackend | None = None,
    provider: LiteratureProvider | None = None,
) -> MLOpsPlatform:
    settings = settings or get_settings()
    provider = provider or HttpLiteratureProvider.from_settings(settings)

    registry = ModelRegistry()
    feature_store = FeatureStore(settings)
    alerts = AlertEngine()
    monitor = ModelMonitor(settings, alert_engine=alerts)
    training = TrainingPipeline(registry, backend=backend or LinearBaselineBackend())
    orchestrator = WorkflowOrchestrator(registry, feature_store, monitor, training, settings=settings)
    graph = KnowledgeGraph(settings)
    insights = InsightEngine(graph, provider=provider)

    logger.info(
        "platform.built",
        env=settings.app_env,
        backend=training.backend.framework,
        provider=provider.name if provider else None,
    )
    return MLOpsPlatform(
        settings=settings,
        registry=registry,
        feature_store=feature_store,
        alerts=alerts,
        monitor=monitor,
        training=training,
        orchestrator=orchestrator,
        graph=graph,
        insights=insights,
    )
