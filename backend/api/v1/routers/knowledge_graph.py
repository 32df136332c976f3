"""
Research Knowledge Graph API — Papers, concepts, queries, insights.

Endpoints:
  POST /api/v1/research/papers — Add a paper (concepts extracted, edges linked)
  POST /api/v1/research/concepts — Add a concept/method/material/organism/application node
  POST /api/v1/research/relationships — Link two existing nodes
  GET  /api/v1/research/nodes — Nodes (?type=)
  GET  /api/v1/research/nodes/{id} — Node details
  GET  /api/v1/research/nodes/{id}/neighborhood — Nodes and edges within ?radius hops
  GET  /api/v1/research/nodes/{id}/related — Related nodes within ?max_distance hops
  GET  /api/v1/research/paths — Strongest path between ?source_id and ?target_id (null if none)
  GET  /api/v1/research/communities — Label-propagation clusters
  GET  /api/v1/research/insights — Key concepts, emerging connections, research gaps
  GET  /api/v1/research/stats — Node and edge counts
  GET  /api/v1/research/summary — Narrative graph summary
  GET  /api/v1/research/search — Semantic search over node labels
  GET  /api/v1/research/trends — Keyword trends per period (?start, ?end, ?granularity)
  GET  /api/v1/research/impact — High-impact, breakthrough and cross-domain papers
  POST /api/v1/research/hypotheses — Generate hypotheses from research gaps
  GET  /api/v1/research/hypotheses — Stored hypotheses
  GET  /api/v1/research/hypotheses/{id} — One hypothesis
"""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.deps import get_graph, get_insights
from core.errors import ValidationError
from db.models import (
    CommunityResult,
    Hypothesis,
    ImpactAnalysis,
    KnowledgeEdge,
    KnowledgeNode,
    NodeType,
    PathResult,
    RelatedConcept,
    RelationshipType,
    ResearchInsight,
    ResearchPaper,
    TimeWindow,
    TrendAnalysis,
    TrendGranularity,
)
from research.insights import InsightEngine
from research.knowledge_graph import KnowledgeGraph

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/research", tags=["research"])


# ── Request Models ──────────────────────────────────────────────────────────


class ConceptRequest(BaseModel):
    label: str = Field(min_length=1)
    type: NodeType = NodeType.CONCEPT
    properties: dict[str, Any] = Field(default_factory=dict)


class RelationshipRequest(BaseModel):
    source_id: str
    target_id: str
    relationship_type: RelationshipType
    weight: float = 1.0
    properties: dict[str, Any] = Field(default_factory=dict)


class HypothesesRequest(BaseModel):
    max_hypotheses: int = Field(default=5, ge=1, le=50)
    min_confidence: float = Field(default=0.5, ge=0, le=1)


# ── Mutation ────────────────────────────────────────────────────────────────


@router.post("/papers", status_code=201)
async def add_paper(paper: ResearchPaper, graph: KnowledgeGraph = Depends(get_graph)) -> KnowledgeNode:
    return await graph.add_paper(paper)


@router.post("/concepts", status_code=201)
async def add_concept(body: ConceptRequest, graph: KnowledgeGraph = Depends(get_graph)) -> KnowledgeNode:
    return await graph.add_concept(body.label, body.type, body.properties)


@router.post("/relationships", status_code=201)
async def add_relationship(
    body: RelationshipRequest,
    graph: KnowledgeGraph = Depends(get_graph),
) -> KnowledgeEdge:
    return await graph.add_relationship(
        body.source_id,
        body.target_id,
        body.relationship_type,
        weight=body.weight,
        properties=body.properties,
    )


# ── Queries ─────────────────────────────────────────────────────────────────


@router.get("/nodes")
async def list_nodes(
    type: NodeType | None = None,
    graph: KnowledgeGraph = Depends(get_graph),
) -> list[KnowledgeNode]:
    return graph.get_nodes_by_type(type) if type else graph.get_nodes()


@router.get("/nodes/{node_id}")
async def get_node(node_id: str, graph: KnowledgeGraph = Depends(get_graph)) -> KnowledgeNode:
    return graph.get_node(node_id)


@router.get("/nodes/{node_id}/neighborhood")
async def get_node_neighborhood(
    node_id: str,
    radius: int = Query(default=1, ge=1, le=5),
    graph: KnowledgeGraph = Depends(get_graph),
) -> dict[str, Any]:
    return await graph.get_node_neighborhood(node_id, radius)


@router.get("/nodes/{node_id}/related")
async def find_related_concepts(
    node_id: str,
    max_distance: int = Query(default=2, ge=1, le=6),
    graph: KnowledgeGraph = Depends(get_graph),
) -> list[RelatedConcept]:
    return await graph.find_related_concepts(node_id, max_distance)


@router.get("/paths")
async def find_shortest_path(
    source_id: str,
    target_id: str,
    graph: KnowledgeGraph = Depends(get_graph),
) -> PathResult | None:
    return await graph.find_shortest_path(source_id, target_id)


@router.get("/communities")
async def identify_communities(graph: KnowledgeGraph = Depends(get_graph)) -> CommunityResult:
    return await graph.identify_communities()


@router.get("/insights")
async def generate_insights(graph: KnowledgeGraph = Depends(get_graph)) -> list[ResearchInsight]:
    return await graph.generate_insights()


@router.get("/stats")
async def graph_stats(graph: KnowledgeGraph = Depends(get_graph)) -> dict[str, Any]:
    return graph.get_stats()


# ── Insight engine ──────────────────────────────────────────────────────────


@router.get("/summary")
async def summarize_graph(insights: InsightEngine = Depends(get_insights)) -> dict[str, Any]:
    return await insights.summarize_graph()


@router.get("/search")
async def semantic_search(
    q: str = Query(min_length=1),
    top_k: int = Query(default=5, ge=1, le=50),
    insights: InsightEngine = Depends(get_insights),
) -> list[dict[str, Any]]:
    hits = await insights.semantic_search(q, top_k)
    return [{"node": hit.node, "score": hit.score} for hit in hits]


@router.get("/trends")
async def analyze_trends(
    start: datetime | None = None,
    end: datetime | None = None,
    granularity: TrendGranularity = TrendGranularity.QUARTERLY,
    insights: InsightEngine = Depends(get_insights),
) -> TrendAnalysis:
    if (start is None) != (end is None):
        raise ValidationError("start and end must be given together")
    window = TimeWindow(start=start, end=end) if start is not None else None
    return await insights.analyze_trends(window, granularity)


@router.get("/impact")
async def analyze_impact(insights: InsightEngine = Depends(get_insights)) -> ImpactAnalysis:
    return await insights.analyze_impact()


@router.post("/hypotheses", status_code=201)
async def generate_hypotheses(
    body: HypothesesRequest,
    insights: InsightEngine = Depends(get_insights),
) -> list[Hypothesis]:
    return await insights.generate_hypotheses(body.max_hypotheses, body.min_confidence)


@router.get("/hypotheses")
async def list_hypotheses(insights: InsightEngine = Depends(get_insights)) -> list[Hypothesis]:
    return insights.list_hypotheses()


@router.get("/hypotheses/{hypothesis_id}")
async def get_hypothesis(hypothesis_id: str, insights: InsightEngine = Depends(get_insights)) -> Hypothesis:
    return insights.get_hypothesis(hypothesis_id)
