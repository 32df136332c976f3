"""
Research Knowledge Graph — Typed nodes and edges over papers and concepts.

Queries:
  - find_shortest_path: Dijkstra, edge cost = 1 / weight
  - find_related_concepts: hop-limited BFS with the relationship path
  - identify_communities: label propagation (≤10 iterations)
  - generate_insights: key concepts, emerging connections, research gaps

Edges keep their stored direction, but every traversal runs on an undirected
networkx MultiGraph keyed by edge id: a paper→concept `uses` edge connects
both ways, and parallel edges resolve to the strongest one.
"""

from collections import Counter
from collections.abc import Iterable, Iterator
from datetime import timedelta
from itertools import islice
from typing import Any

import networkx as nx
import structlog

from core.config import Settings, get_settings
from core.errors import ValidationError
from core.locks import KeyedLock
from db.models import (
    Community,
    CommunityResult,
    InsightCategory,
    KnowledgeEdge,
    KnowledgeNode,
    NodeType,
    PathResult,
    RelatedConcept,
    RelationshipType,
    ResearchInsight,
    ResearchPaper,
    utcnow,
)
from db.repositories import InMemoryRepository, Repository
from research.concepts import extract_concepts, paper_weight

logger = structlog.get_logger()

MAX_LABEL_PROPAGATION_ITERATIONS = 10
CENTRAL_NODE_SHARE = 0.2
KEY_CONCEPT_CONFIDENCE_CAP = 0.9
KEY_CONCEPT_DEGREE_SCALE = 20
EMERGING_CONFIDENCE = 0.7
GAP_CONFIDENCE = 0.6

_GRAPH_LOCK = "graph"


# ─── Label propagation ──────────────────────────────────────────────────────


def propagate_labels(
    order: list[str],
    neighbors: dict[str, set[str]],
    labels: dict[str, str] | None = None,
    max_iterations: int = MAX_LABEL_PROPAGATION_ITERATIONS,
) -> tuple[dict[str, str], int, bool]:
    """
    Asynchronous label propagation over `order`.

    A node switches only to a label that is strictly more common among its
    neighbours than every other label, including its current one. Ties keep
    the current label, so a converged labelling is a fixed point.

    Returns (labels, iterations run, converged).
    """
    current = dict(labels) if labels else {node: node for node in order}
    for iteration in range(1, max_iterations + 1):
        changed = False
        for node in order:
            adjacent = neighbors.get(node, set())
            if not adjacent:
                continue
            counts = Counter(current[n] for n in adjacent)
            top = max(counts.values())
            winners = [label for label, count in counts.items() if count == top]
            if len(winners) != 1 or counts.get(current[node], 0) == top:
                continue
            current[node] = winners[0]
            changed = True
        if not changed:
            return current, iteration, True
    return current, max_iterations, False


def classify_path(node_count: int) -> str:
    if node_count <= 2:
        return "direct"
    if node_count <= 4:
        return "indirect"
    return "multihop"


class KnowledgeGraph:
    """Per-tenant research graph."""

    def __init__(
        self,
        settings: Settings | None = None,
        nodes: Repository[KnowledgeNode] | None = None,
        edges: Repository[KnowledgeEdge] | None = None,
    ):
        self.settings = settings or get_settings()
        self.nodes: Repository[KnowledgeNode] = nodes or InMemoryRepository("Node")
        self.edges: Repository[KnowledgeEdge] = edges or InMemoryRepository("Edge")
        # edge key = KnowledgeEdge.id; attributes mirror weight and type for traversal
        self.graph = nx.MultiGraph()
        self._locks = KeyedLock()

    # ─── Mutation ──────────────────────────────────────────────────────────

    async def add_paper(self, paper: ResearchPaper) -> KnowledgeNode:
        """
        Add a paper node, its concept nodes and `uses` edges, and `cites`
        edges to cited papers already in the graph.
        """
        async with self._locks(_GRAPH_LOCK):
            if paper.id in self.nodes:
                raise ValidationError(f"Paper {paper.id} already in graph", paper_id=paper.id)

            node = KnowledgeNode(
                id=paper.id,
                type=NodeType.PAPER,
                label=paper.title,
                properties={
                    "authors": paper.authors,
                    "abstract": paper.abstract,
                    "published_date": paper.published_date.isoformat(),
                    "journal": paper.journal,
                    "doi": paper.doi,
                    "keywords": paper.keywords,
                },
                weight=paper_weight(paper),
            )
            self._insert_node(node)

            concepts = extract_concepts(paper)
            for label in concepts:
                concept = self._find_node(label, NodeType.CONCEPT)
                if concept is None:
                    concept = KnowledgeNode(
                        type=NodeType.CONCEPT,
                        label=label,
                        properties={"frequency": 1, "first_seen": paper.published_date.isoformat()},
                    )
                    self._insert_node(concept)
                else:
                    concept.properties = {**concept.properties, "frequency": concept.properties.get("frequency", 0) + 1}
                    concept.updated_at = utcnow()
                self._insert_edge(paper.id, concept.id, RelationshipType.USES, 1.0, {})

            cited = [cid for cid in paper.citations if cid in self.nodes and cid != paper.id]
            for cited_id in cited:
                self._insert_edge(paper.id, cited_id, RelationshipType.CITES, 1.0, {})

        logger.info(
            "graph.paper_added",
            paper_id=paper.id,
            concepts=len(concepts),
            citations_linked=len(cited),
            weight=round(node.weight, 3),
        )
        return node

    async def add_concept(
        self,
        label: str,
        type: NodeType = NodeType.CONCEPT,
        properties: dict[str, Any] | None = None,
    ) -> KnowledgeNode:
        if type == NodeType.PAPER:
            raise ValidationError("Papers are added with add_paper")
        node = KnowledgeNode(type=type, label=label, properties=dict(properties or {}))
        async with self._locks(_GRAPH_LOCK):
            self._insert_node(node)
        logger.info("graph.node_added", node_id=node.id, node_type=type.value, label=label)
        return node

    async def add_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship_type: RelationshipType,
        weight: float = 1.0,
        properties: dict[str, Any] | None = None,
    ) -> KnowledgeEdge:
        """Both endpoints must exist; each gains the configured weight increment."""
        async with self._locks(_GRAPH_LOCK):
            self.nodes.require(source_id)
            self.nodes.require(target_id)
            if weight <= 0:
                raise ValidationError("Edge weight must be positive", weight=weight)
            edge = self._insert_edge(source_id, target_id, relationship_type, weight, dict(properties or {}))

        logger.info(
            "graph.edge_added",
            edge_id=edge.id,
            source_id=source_id,
            target_id=target_id,
            relationship=relationship_type.value,
            weight=weight,
        )
        return edge

    def _insert_node(self, node: KnowledgeNode) -> None:
        self.nodes.put(node.id, node)
        self.graph.add_node(node.id)

    def _insert_edge(
        self,
        source_id: str,
        target_id: str,
        relationship_type: RelationshipType,
        weight: float,
        properties: dict[str, Any],
    ) -> KnowledgeEdge:
        edge = KnowledgeEdge(
            source_id=source_id,
            target_id=target_id,
            relationship_type=relationship_type,
            weight=weight,
            properties=properties,
        )
        self.edges.put(edge.id, edge)
        self.graph.add_edge(
            source_id, target_id, key=edge.id, weight=weight, relationship_type=relationship_type
        )

        now = utcnow()
        increment = self.settings.graph_edge_weight_increment
        for node_id in {source_id, target_id}:
            endpoint = self.nodes.require(node_id)
            endpoint.weight += increment
            endpoint.updated_at = now
        return edge

    def _find_node(self, label: str, node_type: NodeType) -> KnowledgeNode | None:
        for node in self.nodes.values():
            if node.label == label and node.type == node_type:
                return node
        return None

    # ─── Accessors ─────────────────────────────────────────────────────────

    def get_node(self, node_id: str) -> KnowledgeNode:
        return self.nodes.require(node_id)

    def get_nodes(self) -> list[KnowledgeNode]:
        return self.nodes.values()

    def get_nodes_by_type(self, node_type: NodeType) -> list[KnowledgeNode]:
        return self.nodes.filter(lambda n: n.type == node_type)

    def get_edges(self) -> list[KnowledgeEdge]:
        return self.edges.values()

    def neighbors(self, node_id: str) -> set[str]:
        if node_id not in self.graph:
            return set()
        return {n for n in self.graph.neighbors(node_id) if n != node_id}

    def degree(self, node_id: str) -> int:
        """Number of incident edges, counted once each."""
        if node_id not in self.graph:
            return 0
        # networkx counts a self-loop twice
        return self.graph.degree(node_id) - self.graph.number_of_edges(node_id, node_id)

    def citing_papers(self, paper_id: str) -> list[str]:
        """Papers with a `cites` edge pointing at paper_id."""
        if paper_id not in self.graph:
            return []
        citing = []
        for _, _, key, kind in self.graph.edges(paper_id, keys=True, data="relationship_type"):
            if kind != RelationshipType.CITES:
                continue
            edge = self.edges.require(key)
            if edge.target_id == paper_id and edge.source_id != paper_id:
                citing.append(edge.source_id)
        return list(dict.fromkeys(citing))

    def get_stats(self) -> dict[str, Any]:
        return {
            "node_count": len(self.nodes),
            "edge_count": len(self.edges),
            "node_types": dict(Counter(n.type.value for n in self.nodes.values())),
            "relationship_types": dict(Counter(e.relationship_type.value for e in self.edges.values())),
        }

    def _strongest_edge(self, a: str, b: str) -> KnowledgeEdge:
        attributes = self.graph[a][b]
        key = max(attributes, key=lambda k: attributes[k]["weight"])
        return self.edges.require(key)

    @staticmethod
    def _inverse_weight(u: str, v: str, parallel: dict[str, dict[str, Any]]) -> float:
        return 1.0 / max(attrs["weight"] for attrs in parallel.values())

    # ─── Paths ─────────────────────────────────────────────────────────────

    async def find_shortest_path(self, source_id: str, target_id: str) -> PathResult | None:
        """Cheapest path where each edge costs 1/weight. None when unreachable."""
        source = self.nodes.require(source_id)
        self.nodes.require(target_id)
        if source_id == target_id:
            return PathResult(path=[source], edges=[], total_weight=0.0, path_type=classify_path(1))

        try:
            cost, node_ids = nx.single_source_dijkstra(
                self.graph, source_id, target=target_id, weight=self._inverse_weight
            )
        except nx.NetworkXNoPath:
            return None

        path = [self.nodes.require(nid) for nid in node_ids]
        edges = [self._strongest_edge(a, b) for a, b in zip(node_ids, node_ids[1:])]
        return PathResult(path=path, edges=edges, total_weight=float(cost), path_type=classify_path(len(path)))

    async def find_related_concepts(self, node_id: str, max_distance: int = 2) -> list[RelatedConcept]:
        """Every node within `max_distance` hops, nearest first."""
        self.nodes.require(node_id)
        results = []
        for reached, distance, relationships in self._within(node_id, max_distance):
            results.append(
                RelatedConcept(node=self.nodes.require(reached), distance=distance, relationship_path=relationships)
            )
        return sorted(results, key=lambda r: r.distance)

    def _within(self, start: str, max_hops: int) -> Iterable[tuple[str, int, list[RelationshipType]]]:
        """(node, hops, relationship types along a BFS path) for every other node within `max_hops`."""
        paths = nx.single_source_shortest_path(self.graph, start, cutoff=max_hops)
        for reached, node_ids in paths.items():
            if reached == start:
                continue
            relationships = [self._strongest_edge(a, b).relationship_type for a, b in zip(node_ids, node_ids[1:])]
            yield reached, len(node_ids) - 1, relationships

    def _reachable(self, start: str, max_hops: int) -> set[str]:
        lengths = nx.single_source_shortest_path_length(self.graph, start, cutoff=max_hops)
        return set(lengths) - {start}

    async def get_node_neighborhood(self, node_id: str, radius: int = 1) -> dict[str, Any]:
        center = self.nodes.require(node_id)
        reached = self._reachable(node_id, radius)
        members = reached | {node_id}
        neighbors = [self.nodes.require(nid) for nid in reached]
        inside = {key for _, _, key in self.graph.subgraph(members).edges(keys=True)}
        edges = [e for e in self.edges.values() if e.id in inside]

        insights = [f"{center.label} is connected to {len(neighbors)} related nodes"]
        if edges:
            common, _ = Counter(e.relationship_type.value for e in edges).most_common(1)[0]
            insights.append(f"Most common relationship: {common}")
        concept_labels = [n.label for n in neighbors if n.type == NodeType.CONCEPT][:3]
        if concept_labels:
            insights.append(f"Related concepts: {', '.join(concept_labels)}")

        return {"center_node": center, "neighbors": neighbors, "edges": edges, "insights": insights}

    # ─── Communities ───────────────────────────────────────────────────────

    async def identify_communities(self) -> CommunityResult:
        order = list(self.graph.nodes)
        adjacency = {nid: self.neighbors(nid) for nid in order}
        labels, iterations, converged = propagate_labels(order, adjacency)

        members: dict[str, list[str]] = {}
        for nid in order:
            members.setdefault(labels[nid], []).append(nid)

        communities = []
        membership: dict[str, str] = {}
        for label, node_ids in members.items():
            if len(node_ids) < 2:
                continue
            nodes = [self.nodes.require(nid) for nid in node_ids]
            communities.append(
                Community(
                    id=label,
                    nodes=nodes,
                    central_nodes=self._central_nodes(nodes),
                    theme=self._theme(nodes),
                    coherence_score=self._coherence(node_ids),
                )
            )
            membership.update({nid: label for nid in node_ids})

        bridging = [
            self.nodes.require(nid)
            for nid in order
            if len({membership[n] for n in adjacency[nid] if n in membership}) > 1
        ]

        logger.info(
            "graph.communities_identified",
            communities=len(communities),
            bridging=len(bridging),
            iterations=iterations,
            converged=converged,
        )
        return CommunityResult(communities=communities, bridging_nodes=bridging, iterations=iterations, converged=converged)

    def _central_nodes(self, nodes: list[KnowledgeNode]) -> list[KnowledgeNode]:
        count = max(1, int(len(nodes) * CENTRAL_NODE_SHARE))
        return sorted(nodes, key=lambda n: n.weight, reverse=True)[:count]

    def _theme(self, nodes: list[KnowledgeNode]) -> str:
        concepts = [n for n in nodes if n.type == NodeType.CONCEPT]
        if concepts:
            return max(concepts, key=lambda n: n.weight).label
        keywords = [kw for n in nodes if n.type == NodeType.PAPER for kw in n.properties.get("keywords") or []]
        if keywords:
            return Counter(keywords).most_common(1)[0][0]
        return "Research Cluster"

    def _coherence(self, node_ids: list[str]) -> float:
        """Distinct linked pairs inside the community over n·(n−1)."""
        n = len(node_ids)
        if n < 2:
            return 1.0
        internal = nx.Graph(self.graph.subgraph(node_ids))
        internal.remove_edges_from(list(nx.selfloop_edges(internal)))
        return internal.number_of_edges() / (n * (n - 1))

    # ─── Insights ──────────────────────────────────────────────────────────

    async def generate_insights(self) -> list[ResearchInsight]:
        insights = self._key_concept_insights()
        insights.extend(self._emerging_connection_insights())
        insights.extend(self._research_gap_insights())
        logger.info("graph.insights_generated", insights=len(insights))
        return insights

    def _connected_papers(self, node_id: str) -> list[str]:
        return [
            nid for nid in self.neighbors(node_id) if self.nodes.require(nid).type == NodeType.PAPER
        ]

    def _key_concept_insights(self) -> list[ResearchInsight]:
        ranked = sorted(
            (n for n in self.nodes.values() if self.degree(n.id) > 0),
            key=lambda n: self.degree(n.id),
            reverse=True,
        )[: self.settings.graph_max_key_concepts]

        insights = []
        for node in ranked:
            degree = self.degree(node.id)
            papers = self._connected_papers(node.id)
            insights.append(
                ResearchInsight(
                    title=f"Key Concept: {node.label}",
                    insight=(
                        f"{node.label} is a central concept with {degree} connections, "
                        "indicating its importance in the research domain."
                    ),
                    category=InsightCategory.TREND,
                    confidence=min(KEY_CONCEPT_CONFIDENCE_CAP, degree / KEY_CONCEPT_DEGREE_SCALE),
                    supporting_evidence=papers,
                    related_papers=papers,
                    related_nodes=[node.id],
                )
            )
        return insights

    def _emerging_connection_insights(self) -> list[ResearchInsight]:
        cutoff = utcnow() - timedelta(days=self.settings.graph_emerging_window_days)
        recent = sorted(
            (e for e in self.edges.values() if e.created_at > cutoff),
            key=lambda e: e.created_at,
            reverse=True,
        )[: self.settings.graph_max_emerging_connections]

        insights = []
        for edge in recent:
            source = self.nodes.require(edge.source_id)
            target = self.nodes.require(edge.target_id)
            evidence = [n.id for n in (source, target) if n.type == NodeType.PAPER]
            insights.append(
                ResearchInsight(
                    title=f"Emerging Connection: {source.label} ↔ {target.label}",
                    insight=(
                        f"New research is exploring connections between {source.label} and "
                        f"{target.label}, representing a potential research opportunity."
                    ),
                    category=InsightCategory.OPPORTUNITY,
                    confidence=EMERGING_CONFIDENCE,
                    supporting_evidence=evidence,
                    related_papers=evidence,
                    related_nodes=[source.id, target.id],
                )
            )
        return insights

    def research_gaps(self, limit: int | None = None) -> list[tuple[KnowledgeNode, KnowledgeNode]]:
        """Up to `limit` gaps (default graph_max_gap_insights), in insertion order."""
        cap = self.settings.graph_max_gap_insights if limit is None else limit
        return list(islice(self.iter_research_gaps(), cap))

    def iter_research_gaps(self) -> Iterator[tuple[KnowledgeNode, KnowledgeNode]]:
        """
        Concept pairs with no path within the hop limit, in insertion order.

        One bounded BFS per concept, run only when the caller asks for more.
        """
        concepts = self.get_nodes_by_type(NodeType.CONCEPT)
        max_hops = self.settings.graph_research_gap_max_hops
        for i, first in enumerate(concepts):
            reachable = self._reachable(first.id, max_hops)
            for second in concepts[i + 1 :]:
                if second.id not in reachable:
                    yield first, second

    def _research_gap_insights(self) -> list[ResearchInsight]:
        return [
            ResearchInsight(
                title=f"Research Gap: {first.label} and {second.label}",
                insight=(
                    f"Limited research connecting {first.label} and {second.label}, "
                    "despite their potential relevance."
                ),
                category=InsightCategory.GAP,
                confidence=GAP_CONFIDENCE,
                related_nodes=[first.id, second.id],
            )
            for first, second in self.research_gaps()
        ]
