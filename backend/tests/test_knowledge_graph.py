"""
Tests for the Research Knowledge Graph.

Covers:
  - Paper ingestion (concepts, citations, weights)
  - Shortest paths and related-concept search
  - Label propagation and community detection
  - Insight generation
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.errors import NotFoundError, ValidationError
from db.models import InsightCategory, NodeType, RelationshipType
from research.concepts import extract_concepts, paper_weight
from research.knowledge_graph import KnowledgeGraph, classify_path, propagate_labels


@pytest.fixture
def graph(settings) -> KnowledgeGraph:
    return KnowledgeGraph(settings)


def _concept(graph: KnowledgeGraph, label: str):
    return next(n for n in graph.get_nodes_by_type(NodeType.CONCEPT) if n.label == label)


# ── Concepts ──────────────────────────────────────────────────────────


class TestConceptExtraction:
    def test_keywords_then_vocabulary(self, paper):
        p = paper("p1", ["Anode Design", "biofilm"], abstract="A Microbial Fuel Cell with a biofilm-coated electrode.")
        assert extract_concepts(p) == ["Anode Design", "biofilm", "electrode", "microbial", "fuel cell"]

    def test_weight_components(self, paper):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        p = paper("p1", [], citations=["a", "b"], journal="Nature", published_date=now - timedelta(days=365 * 5))
        # 1.0 + 0.2 citations + 0.2 journal + (2.0 - 0.5) recency
        assert paper_weight(p, now=now) == pytest.approx(2.9)

    def test_recency_bonus_floors_at_zero(self, paper):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        p = paper("p1", [], published_date=now - timedelta(days=365 * 40))
        assert paper_weight(p, now=now) == pytest.approx(1.0)


# ── Mutation ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestMutation:
    async def test_add_paper_links_concepts(self, graph, paper):
        p = paper("p1", ["anode", "cathode"])
        node = await graph.add_paper(p)

        assert node.id == "p1"
        assert node.type == NodeType.PAPER
        assert node.weight == pytest.approx(paper_weight(p) + 0.2, rel=1e-3)
        assert graph.degree("p1") == 2
        assert _concept(graph, "anode").properties["frequency"] == 1
        assert graph.get_stats()["relationship_types"] == {"uses": 2}

    async def test_shared_concept_reused(self, graph, paper):
        await graph.add_paper(paper("p1", ["anode"]))
        await graph.add_paper(paper("p2", ["anode"]))
        assert len(graph.get_nodes_by_type(NodeType.CONCEPT)) == 1
        assert _concept(graph, "anode").properties["frequency"] == 2

    async def test_citations_to_known_papers_only(self, graph, paper):
        await graph.add_paper(paper("p1", []))
        await graph.add_paper(paper("p2", [], citations=["p1", "p404"]))
        cites = [e for e in graph.get_edges() if e.relationship_type == RelationshipType.CITES]
        assert [(e.source_id, e.target_id) for e in cites] == [("p2", "p1")]

    async def test_duplicate_paper_rejected(self, graph, paper):
        await graph.add_paper(paper("p1", []))
        with pytest.raises(ValidationError):
            await graph.add_paper(paper("p1", []))

    async def test_relationship_requires_endpoints(self, graph):
        node = await graph.add_concept("anode")
        with pytest.raises(NotFoundError):
            await graph.add_relationship(node.id, "missing", RelationshipType.RELATES_TO)

    async def test_relationship_weight_positive(self, graph):
        a = await graph.add_concept("anode")
        b = await graph.add_concept("cathode")
        with pytest.raises(ValidationError):
            await graph.add_relationship(a.id, b.id, RelationshipType.RELATES_TO, weight=0)

    async def test_relationship_bumps_endpoint_weights(self, graph):
        a = await graph.add_concept("anode")
        b = await graph.add_concept("cathode", type=NodeType.MATERIAL)
        await graph.add_relationship(a.id, b.id, RelationshipType.RELATES_TO)
        assert graph.get_node(a.id).weight == pytest.approx(1.1)
        assert graph.get_node(b.id).weight == pytest.approx(1.1)

    async def test_papers_not_added_as_concepts(self, graph):
        with pytest.raises(ValidationError):
            await graph.add_concept("paper", type=NodeType.PAPER)


# ── Paths ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestPaths:
    async def test_concepts_joined_through_paper(self, graph, paper):
        await graph.add_paper(paper("p1", ["c1", "c2"]))
        c1, c2 = _concept(graph, "c1"), _concept(graph, "c2")

        result = await graph.find_shortest_path(c1.id, c2.id)

        assert [n.id for n in result.path] == [c1.id, "p1", c2.id]
        assert result.path_type == "indirect"
        assert result.total_weight == pytest.approx(2.0)
        assert len(result.edges) == 2

    async def test_path_to_self(self, graph):
        node = await graph.add_concept("anode")
        result = await graph.find_shortest_path(node.id, node.id)
        assert [n.id for n in result.path] == [node.id]
        assert result.path_type == "direct"
        assert result.total_weight == 0.0

    async def test_disconnected_returns_none(self, graph):
        a = await graph.add_concept("anode")
        b = await graph.add_concept("cathode")
        assert await graph.find_shortest_path(a.id, b.id) is None

    async def test_prefers_heavier_edges(self, graph):
        a = await graph.add_concept("a")
        b = await graph.add_concept("b")
        c = await graph.add_concept("c")
        await graph.add_relationship(a.id, b.id, RelationshipType.RELATES_TO, weight=0.5)
        await graph.add_relationship(a.id, c.id, RelationshipType.RELATES_TO, weight=2.0)
        await graph.add_relationship(c.id, b.id, RelationshipType.RELATES_TO, weight=2.0)

        result = await graph.find_shortest_path(a.id, b.id)
        assert [n.id for n in result.path] == [a.id, c.id, b.id]
        assert result.total_weight == pytest.approx(1.0)

    async def test_parallel_edges_use_strongest(self, graph):
        a = await graph.add_concept("a")
        b = await graph.add_concept("b")
        await graph.add_relationship(a.id, b.id, RelationshipType.RELATES_TO, weight=1.0)
        strong = await graph.add_relationship(b.id, a.id, RelationshipType.EXTENDS, weight=4.0)

        result = await graph.find_shortest_path(a.id, b.id)
        assert result.total_weight == pytest.approx(0.25)
        assert [e.id for e in result.edges] == [strong.id]
        assert graph.degree(a.id) == 2
        assert graph.neighbors(a.id) == {b.id}

        [related] = await graph.find_related_concepts(a.id, max_distance=1)
        assert related.relationship_path == [RelationshipType.EXTENDS]

    async def test_unknown_endpoint(self, graph):
        node = await graph.add_concept("anode")
        with pytest.raises(NotFoundError):
            await graph.find_shortest_path(node.id, "missing")

    def test_classify_path(self):
        assert [classify_path(n) for n in (1, 2, 3, 4, 5)] == [
            "direct",
            "direct",
            "indirect",
            "indirect",
            "multihop",
        ]

    async def test_related_concepts_by_distance(self, graph, paper):
        await graph.add_paper(paper("p1", ["c1", "c2"]))
        await graph.add_paper(paper("p2", ["c2", "c3"]))
        c1 = _concept(graph, "c1")

        near = await graph.find_related_concepts(c1.id, max_distance=1)
        assert [r.node.id for r in near] == ["p1"]

        far = await graph.find_related_concepts(c1.id, max_distance=3)
        distances = {r.node.id: r.distance for r in far}
        assert distances["p1"] == 1
        assert distances[_concept(graph, "c2").id] == 2
        assert distances["p2"] == 3
        assert far[-1].relationship_path == [RelationshipType.USES] * 3

    async def test_neighborhood(self, graph, paper):
        await graph.add_paper(paper("p1", ["c1", "c2"]))
        result = await graph.get_node_neighborhood("p1")
        assert {n.label for n in result["neighbors"]} == {"c1", "c2"}
        assert len(result["edges"]) == 2
        assert "Most common relationship: uses" in result["insights"]


# ── Communities ───────────────────────────────────────────────────────


class TestLabelPropagation:
    NEIGHBORS = {
        "h": {"l1", "l2", "l3"},
        "l1": {"h"},
        "l2": {"h"},
        "l3": {"h"},
    }

    def test_star_collapses_to_hub(self):
        labels, iterations, converged = propagate_labels(["h", "l1", "l2", "l3"], self.NEIGHBORS)
        assert set(labels.values()) == {"h"}
        assert converged
        assert iterations == 2

    def test_converged_labels_are_a_fixed_point(self):
        order = ["h", "l1", "l2", "l3"]
        labels, _, _ = propagate_labels(order, self.NEIGHBORS)
        again, iterations, converged = propagate_labels(order, self.NEIGHBORS, labels)
        assert again == labels
        assert iterations == 1
        assert converged

    def test_ties_keep_current_label(self):
        labels, _, converged = propagate_labels(["a", "b"], {"a": {"b"}, "b": {"a"}}, {"a": "x", "b": "x"})
        assert labels == {"a": "x", "b": "x"}
        assert converged

    def test_isolated_nodes_keep_own_label(self):
        labels, _, _ = propagate_labels(["solo"], {})
        assert labels == {"solo": "solo"}


@pytest.mark.asyncio
class TestCommunities:
    async def test_two_stars_and_a_bridge(self, graph, paper):
        await graph.add_paper(paper("p1", ["shared", "b", "c"]))
        await graph.add_paper(paper("p2", ["shared", "x", "y"]))

        result = await graph.identify_communities()

        assert result.converged
        by_id = {c.id: c for c in result.communities}
        assert set(by_id) == {"p1", "p2"}
        assert {n.label for n in by_id["p1"].nodes} == {"Paper p1", "b", "c"}
        assert by_id["p1"].coherence_score == pytest.approx(2 / 6)
        assert [n.label for n in result.bridging_nodes] == ["shared"]

    async def test_empty_graph(self, graph):
        result = await graph.identify_communities()
        assert result.communities == []
        assert result.converged


# ── Insights ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestInsights:
    async def test_categories(self, graph, paper):
        await graph.add_paper(paper("p1", ["anode", "biofilm"]))
        await graph.add_paper(paper("p2", ["algae"]))

        insights = await graph.generate_insights()
        categories = {i.category for i in insights}
        assert categories == {InsightCategory.TREND, InsightCategory.OPPORTUNITY, InsightCategory.GAP}

        top = insights[0]
        assert top.category == InsightCategory.TREND
        assert top.related_nodes == ["p1"]
        assert top.confidence == pytest.approx(2 / 20)

    async def test_research_gaps_are_unreachable_concept_pairs(self, graph, paper):
        await graph.add_paper(paper("p1", ["anode", "biofilm"]))
        await graph.add_paper(paper("p2", ["algae"]))

        gaps = [(a.label, b.label) for a, b in graph.research_gaps()]
        assert gaps == [("anode", "algae"), ("biofilm", "algae")]

    async def test_gaps_respect_hop_limit(self, settings, paper):
        settings.graph_research_gap_max_hops = 1
        graph = KnowledgeGraph(settings)
        await graph.add_paper(paper("p1", ["anode", "biofilm"]))
        # anode - p1 - biofilm is two hops
        assert [(a.label, b.label) for a, b in graph.research_gaps()] == [("anode", "biofilm")]

    async def test_gap_cap(self, settings, paper):
        settings.graph_max_gap_insights = 2
        graph = KnowledgeGraph(settings)
        for i in range(4):
            await graph.add_concept(f"isolated-{i}")
        assert len(graph.research_gaps()) == 2
        assert len(graph.research_gaps(limit=5)) == 5
        assert len(list(graph.iter_research_gaps())) == 6

    async def test_emerging_connections_capped(self, graph, paper):
        for i in range(4):
            await graph.add_paper(paper(f"p{i}", ["a", "b"]))
        emerging = [i for i in await graph.generate_insights() if i.category == InsightCategory.OPPORTUNITY]
        assert len(emerging) == 5
        assert all(i.confidence == 0.7 for i in emerging)
