"""
MESSAI MLOps API Dependencies

Dependency injection for the per-app platform handle and its components.
"""

from fastapi import Depends, Request

from ml.feature_store import FeatureStore
from ml.monitoring import ModelMonitor
from ml.orchestrator import WorkflowOrchestrator
from ml.platform import MLOpsPlatform
from ml.registry import ModelRegistry
from research.insights import InsightEngine
from research.knowledge_graph import KnowledgeGraph


def get_platform(request: Request) -> MLOpsPlatform:
    """Platform built in the app lifespan (tests may swap app.state.platform)."""
    return request.app.state.platform


def get_registry(platform: MLOpsPlatform = Depends(get_platform)) -> ModelRegistry:
    return platform.registry


def get_monitor(platform: MLOpsPlatform = Depends(get_platform)) -> ModelMonitor:
    return platform.monitor


def get_feature_store(platform: MLOpsPlatform = Depends(get_platform)) -> FeatureStore:
    return platform.feature_store


def get_orchestrator(platform: MLOpsPlatform = Depends(get_platform)) -> WorkflowOrchestrator:
    return platform.orchestrator


def get_graph(platform: MLOpsPlatform = Depends(get_platform)) -> KnowledgeGraph:
    return platform.graph


def get_insights(platform: MLOpsPlatform = Depends(get_platform)) -> InsightEngine:
    return platform.insights
