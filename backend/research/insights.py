"""
Insight Engine — Hypotheses, graph summaries, search, trends and impact.

Sits above the knowledge graph. Each provider-backed operation tries the
configured LiteratureProvider first and falls back to a deterministic
rendition when the provider is missing or fails:
  - generate_hypotheses: research gaps → testable hypotheses (template text)
  - summarize_graph: narrative over graph stats and key concepts
  - semantic_search: cosine similarity over node labels, hashed
    bag-of-words vectors when no embeddings are available

analyze_trends and analyze_impact are always deterministic: they read the
paper nodes' keywords, publication dates and incoming `cites` edges.
"""

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime

import numpy as np
import pandas as pd
import structlog

from db.models import (
    Breakthrough,
    CrossDomainGroup,
    HotSpot,
    Hypothesis,
    ImpactAnalysis,
    KnowledgeNode,
    NodeType,
    PaperImpact,
    TimeWindow,
    TopicTrend,
    TrendAnalysis,
    TrendDirection,
    TrendGranularity,
    as_utc,
    utcnow,
)
from db.repositories import InMemoryRepository, Repository
from research.concepts import DAYS_PER_YEAR
from research.knowledge_graph import KnowledgeGraph
from research.providers import LiteratureProvider

logger = structlog.get_logger()

HASH_DIMENSIONS = 256
BASE_HYPOTHESIS_CONFIDENCE = 0.5
FREQUENCY_CONFIDENCE_STEP = 0.05
MAX_HYPOTHESIS_CONFIDENCE = 0.85
MAX_EVIDENCE_PAPERS = 5

# Trends
MAX_TRENDS = 10
MAX_TOPIC_LIST = 10
TREND_RELATIVE_SLOPE = 0.2
HOT_SPOT_RECENT_DAYS = 365
_PERIOD_FREQ = {
    TrendGranularity.MONTHLY: "M",
    TrendGranularity.QUARTERLY: "Q",
    TrendGranularity.YEARLY: "Y",
}

# Impact
MAX_HIGH_IMPACT = 10
MAX_BREAKTHROUGHS = 5
BREAKTHROUGH_THRESHOLD = 0.6
HIGH_VELOCITY = 5.0
MIN_AGE_YEARS = 0.25
MAX_INFLUENCE_NETWORK = 10
RELEVANT_KEYWORDS = ("sustainable", "innovative", "breakthrough", "novel")
NOVEL_KEYWORDS = ("novel", "breakthrough", "first", "innovative", "revolutionary")
DISCIPLINES = {
    "materials": ("material", "electrode", "membrane", "catalyst"),
    "biology": ("microbial", "bacterial", "biofilm", "enzyme"),
    "engineering": ("design", "optimization", "scale", "system"),
    "chemistry": ("chemical", "reaction", "synthesis", "analysis"),
}

_TOKEN = re.compile(r"[a-z0-9]+")


@dataclass
class SearchHit:
    node: KnowledgeNode
    score: float


def hashed_bag_of_words(text: str, dimensions: int = HASH_DIMENSIONS) -> np.ndarray:
    """Deterministic token-count vector; md5 keeps buckets stable across processes."""
    vector = np.zeros(dimensions, dtype=float)
    for token in _TOKEN.findall(text.lower()):
        bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % dimensions
        vector[bucket] += 1.0
    return vector


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


# ─── Trend and impact scoring ───────────────────────────────────────────────


def normalize_keywords(keywords) -> list[str]:
    return list(dict.fromkeys(k.strip().lower() for k in keywords or [] if k and k.strip()))


def trend_direction(counts: np.ndarray, slope: float) -> TrendDirection:
    """Absent in every earlier period and present in the last one → emerging; otherwise by relative slope."""
    if len(counts) >= 2 and counts[-1] > 0 and not counts[:-1].any():
        return TrendDirection.EMERGING
    mean = float(counts.mean())
    relative = slope / mean if mean > 0 else 0.0
    if relative > TREND_RELATIVE_SLOPE:
        return TrendDirection.INCREASING
    if relative < -TREND_RELATIVE_SLOPE:
        return TrendDirection.DECREASING
    return TrendDirection.STABLE


def trend_strength(counts: np.ndarray, slope: float) -> float:
    return float(min(1.0, abs(slope) / (1.0 + float(counts.var()))))


def trend_significance(direction: TrendDirection, strength: float) -> str:
    if strength > 0.8:
        return f"Strong {direction.value} trend indicating a significant shift in research focus"
    if strength > 0.5:
        return f"Moderate {direction.value} trend showing evolving research interest"
    return f"Weak {direction.value} trend with limited pattern confidence"


def _mentions(keywords: list[str], needles: tuple[str, ...]) -> bool:
    return any(needle in keyword for keyword in keywords for needle in needles)


def paper_disciplines(keywords: list[str]) -> list[str]:
    return [name for name, needles in DISCIPLINES.items() if _mentions(keywords, needles)]


def impact_score(citations: int, journal: str | None, age_years: float, keywords: list[str]) -> float:
    score = 0.3 * citations
    if journal:
        score += 0.2
    score += max(0.0, 0.2 - 0.02 * age_years)
    if _mentions(keywords, RELEVANT_KEYWORDS):
        score += 0.3
    return min(1.0, score)


def breakthrough_score(keywords: list[str], velocity: float, disciplines: list[str]) -> tuple[float, list[str]]:
    score = 0.0
    factors = []
    if _mentions(keywords, NOVEL_KEYWORDS):
        score += 0.4
    if _mentions(keywords, ("novel",)):
        factors.append("Novel methodology")
    if _mentions(keywords, ("first",)):
        factors.append("First reported")
    if velocity > HIGH_VELOCITY:
        score += 0.3
        factors.append("High citation velocity")
    if len(disciplines) > 2:
        score += 0.3
        factors.append("Interdisciplinary approach")
    return min(1.0, score), factors


class InsightEngine:
    def __init__(
        self,
        graph: KnowledgeGraph,
        provider: LiteratureProvider | None = None,
        hypotheses: Repository[Hypothesis] | None = None,
    ):
        self.graph = graph
        self.provider = provider
        self.hypotheses: Repository[Hypothesis] = hypotheses or InMemoryRepository("Hypothesis")

    # ─── Hypotheses ────────────────────────────────────────────────────────

    async def generate_hypotheses(self, max_hypotheses: int = 5, min_confidence: float = 0.5) -> list[Hypothesis]:
        if max_hypotheses <= 0:
            return []
        generated = []
        for first, second in self.graph.iter_research_gaps():
            hypothesis = self._template_hypothesis(first, second)
            if hypothesis.confidence < min_confidence:
                continue
            description = await self._ask(self._hypothesis_prompt(first, second))
            if description is not None:
                hypothesis.description = description
                hypothesis.source = self.provider.name if self.provider else "template"
            generated.append(hypothesis)
            if len(generated) >= max_hypotheses:
                break

        for hypothesis in generated:
            self.hypotheses.put(hypothesis.id, hypothesis)
        logger.info("insights.hypotheses_generated", count=len(generated), min_confidence=min_confidence)
        return generated

    def get_hypothesis(self, hypothesis_id: str) -> Hypothesis:
        return self.hypotheses.require(hypothesis_id)

    def list_hypotheses(self) -> list[Hypothesis]:
        return self.hypotheses.values()

    def _template_hypothesis(self, first: KnowledgeNode, second: KnowledgeNode) -> Hypothesis:
        frequency = int(first.properties.get("frequency", 1)) + int(second.properties.get("frequency", 1))
        confidence = min(
            MAX_HYPOTHESIS_CONFIDENCE,
            BASE_HYPOTHESIS_CONFIDENCE + FREQUENCY_CONFIDENCE_STEP * frequency,
        )
        papers = list(
            dict.fromkeys(self._papers_for(first.id) + self._papers_for(second.id))
        )[:MAX_EVIDENCE_PAPERS]
        return Hypothesis(
            title=f"Combining {first.label} with {second.label}",
            description=(
                f"Approaches built around {first.label} may improve outcomes when applied together "
                f"with {second.label}; no studied connection between the two exists yet."
            ),
            confidence=confidence,
            evidence_papers=papers,
            research_gaps=[f"{first.label} ↔ {second.label}"],
            suggested_experiments=[
                f"Controlled comparison of {first.label} systems with and without {second.label}",
                f"Literature survey of indirect links between {first.label} and {second.label}",
            ],
        )

    def _papers_for(self, node_id: str) -> list[str]:
        return [
            nid for nid in sorted(self.graph.neighbors(node_id))
            if self.graph.get_node(nid).type == NodeType.PAPER
        ]

    @staticmethod
    def _hypothesis_prompt(first: KnowledgeNode, second: KnowledgeNode) -> str:
        return (
            "Propose one testable research hypothesis connecting "
            f"'{first.label}' and '{second.label}'. Answer in two sentences."
        )

    # ─── Summaries ─────────────────────────────────────────────────────────

    async def summarize_graph(self) -> dict:
        stats = self.graph.get_stats()
        ranked = sorted(self.graph.get_nodes(), key=lambda n: self.graph.degree(n.id), reverse=True)
        key = [n.label for n in ranked if self.graph.degree(n.id) > 0][:5]

        summary = await self._ask(
            "Summarize a research knowledge graph with these statistics: "
            f"{stats}. Most connected nodes: {', '.join(key) or 'none'}."
        )
        source = self.provider.name if summary is not None and self.provider else "template"
        if summary is None:
            summary = self._template_summary(stats, key)
        return {"summary": summary, "source": source, "stats": stats, "key_nodes": key}

    @staticmethod
    def _template_summary(stats: dict, key: list[str]) -> str:
        papers = stats["node_types"].get(NodeType.PAPER.value, 0)
        concepts = stats["node_types"].get(NodeType.CONCEPT.value, 0)
        text = (
            f"The graph holds {stats['node_count']} nodes ({papers} papers, {concepts} concepts) "
            f"joined by {stats['edge_count']} relationships."
        )
        if key:
            text += f" The most connected nodes are {', '.join(key)}."
        return text

    # ─── Search ────────────────────────────────────────────────────────────

    async def semantic_search(self, text: str, top_k: int = 5) -> list[SearchHit]:
        nodes = self.graph.get_nodes()
        if not nodes or top_k <= 0:
            return []

        vectors = await self._embed_all([text] + [n.label for n in nodes])
        query, candidates = vectors[0], vectors[1:]
        hits = [
            SearchHit(node=node, score=cosine_similarity(query, vec))
            for node, vec in zip(nodes, candidates)
        ]
        hits = [h for h in hits if h.score > 0]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]

    async def _embed_all(self, texts: list[str]) -> list[np.ndarray]:
        if self.provider is not None:
            try:
                embedded = [np.asarray(await self.provider.embed(t), dtype=float) for t in texts]
                if len({v.shape for v in embedded}) == 1:
                    return embedded
                logger.warning("insights.embedding_shape_mismatch", provider=self.provider.name)
            except Exception as exc:
                logger.warning("insights.provider_failed", operation="embed", provider=self.provider.name, error=str(exc))
        return [hashed_bag_of_words(t) for t in texts]

    # ─── Trends ────────────────────────────────────────────────────────────

    async def analyze_trends(
        self,
        window: TimeWindow | None = None,
        granularity: TrendGranularity = TrendGranularity.QUARTERLY,
    ) -> TrendAnalysis:
        """
        Keyword activity per publication period. Periods span the window (or
        the papers' date range) with empty periods counted as zero, and each
        topic's direction and strength come from a least-squares slope over
        those counts.
        """
        frame = self._paper_frame()
        if window is not None:
            frame = frame[(frame["published"] >= window.start) & (frame["published"] <= window.end)]
        if frame.empty:
            return TrendAnalysis(
                granularity=granularity, periods=[], papers=0, trends=[],
                emerging_topics=[], declining_topics=[], hot_spots=[],
            )

        freq = _PERIOD_FREQ[granularity]
        start = pd.Timestamp(window.start) if window else frame["published"].min()
        end = pd.Timestamp(window.end) if window else frame["published"].max()
        periods = pd.period_range(
            start=start.tz_convert(None).to_period(freq), end=end.tz_convert(None).to_period(freq), freq=freq
        )
        frame = frame.assign(period=frame["published"].dt.tz_convert(None).dt.to_period(freq))

        topics = frame[["period", "keywords"]].explode("keywords").dropna(subset=["keywords"])
        trends, emerging, declining = [], [], []
        if len(periods) >= 2 and not topics.empty:
            counts = (
                topics.groupby(["keywords", "period"]).size()
                .unstack(fill_value=0)
                .reindex(columns=periods, fill_value=0)
                .sort_index()
            )
            x = np.arange(len(periods))
            for topic, row in counts.iterrows():
                values = row.to_numpy(dtype=float)
                slope = float(np.polyfit(x, values, 1)[0])
                direction = trend_direction(values, slope)
                strength = trend_strength(values, slope)
                trends.append(
                    TopicTrend(
                        topic=topic,
                        direction=direction,
                        strength=strength,
                        slope=slope,
                        counts={str(p): int(c) for p, c in zip(periods, values)},
                        significance=trend_significance(direction, strength),
                    )
                )
                if direction == TrendDirection.EMERGING:
                    emerging.append((-values[-1], topic))
                elif values[-1] == 0:
                    declining.append((-values[:-1].sum(), topic))

        trends.sort(key=lambda t: (-t.strength, t.topic))
        analysis = TrendAnalysis(
            granularity=granularity,
            periods=[str(p) for p in periods],
            papers=len(frame),
            trends=trends[:MAX_TRENDS],
            emerging_topics=[topic for _, topic in sorted(emerging)][:MAX_TOPIC_LIST],
            declining_topics=[topic for _, topic in sorted(declining)][:MAX_TOPIC_LIST],
            hot_spots=self._hot_spots(frame, end),
        )
        logger.info(
            "insights.trends_analyzed",
            papers=analysis.papers,
            periods=len(analysis.periods),
            emerging=len(analysis.emerging_topics),
            declining=len(analysis.declining_topics),
        )
        return analysis

    @staticmethod
    def _hot_spots(frame: pd.DataFrame, end: pd.Timestamp) -> list[HotSpot]:
        """Keyword activity where papers from the final year count double."""
        recent = frame["published"] > end - pd.Timedelta(days=HOT_SPOT_RECENT_DAYS)
        weighted = frame.assign(weight=np.where(recent, 2, 1)).explode("keywords").dropna(subset=["keywords"])
        if weighted.empty:
            return []
        activity = (
            weighted.groupby("keywords")
            .agg(activity_score=("weight", "sum"), papers=("paper_id", "count"))
            .reset_index()
            .sort_values(["activity_score", "keywords"], ascending=[False, True])
            .head(MAX_TOPIC_LIST)
        )
        return [
            HotSpot(topic=row.keywords, activity_score=float(row.activity_score), papers=int(row.papers))
            for row in activity.itertuples(index=False)
        ]

    def _paper_frame(self) -> pd.DataFrame:
        rows = [
            {
                "paper_id": node.id,
                "published": node.properties["published_date"],
                "keywords": normalize_keywords(node.properties.get("keywords")),
            }
            for node in self.graph.get_nodes_by_type(NodeType.PAPER)
        ]
        frame = pd.DataFrame(rows, columns=["paper_id", "published", "keywords"])
        frame["published"] = pd.to_datetime(frame["published"], utc=True, format="ISO8601")
        return frame

    # ─── Impact ────────────────────────────────────────────────────────────

    async def analyze_impact(self, as_of: datetime | None = None) -> ImpactAnalysis:
        """
        Citation impact is read from incoming `cites` edges, so a paper is only
        credited for citing papers already in the graph.
        """
        now = as_utc(as_of) if as_of else utcnow()
        impacts, breakthroughs = [], []
        combinations: dict[tuple[str, ...], list[str]] = {}

        for node in sorted(self.graph.get_nodes_by_type(NodeType.PAPER), key=lambda n: n.id):
            published = as_utc(datetime.fromisoformat(node.properties["published_date"]))
            age_years = max(0.0, (now - published).total_seconds() / 86400 / DAYS_PER_YEAR)
            keywords = normalize_keywords(node.properties.get("keywords"))
            citing = self.graph.citing_papers(node.id)
            velocity = len(citing) / max(age_years, MIN_AGE_YEARS)
            disciplines = paper_disciplines(keywords)

            network = list(dict.fromkeys([*(node.properties.get("authors") or []), *citing[:5]]))
            impacts.append(
                PaperImpact(
                    paper_id=node.id,
                    title=node.label,
                    impact_score=impact_score(len(citing), node.properties.get("journal"), age_years, keywords),
                    citation_count=len(citing),
                    citation_velocity=velocity,
                    influence_network=network[:MAX_INFLUENCE_NETWORK],
                )
            )

            score, factors = breakthrough_score(keywords, velocity, disciplines)
            if score > BREAKTHROUGH_THRESHOLD:
                breakthroughs.append(
                    Breakthrough(paper_id=node.id, title=node.label, breakthrough_score=score, novelty_factors=factors)
                )
            if len(disciplines) > 1:
                combinations.setdefault(tuple(sorted(disciplines)), []).append(node.id)

        impacts.sort(key=lambda p: (-p.impact_score, -p.citation_velocity, p.paper_id))
        breakthroughs.sort(key=lambda b: (-b.breakthrough_score, b.paper_id))
        cross_domain = [
            CrossDomainGroup(domains=list(domains), paper_ids=paper_ids)
            for domains, paper_ids in sorted(combinations.items(), key=lambda item: (-len(item[1]), item[0]))
            if len(paper_ids) >= 2
        ]

        analysis = ImpactAnalysis(
            high_impact_papers=impacts[:MAX_HIGH_IMPACT],
            breakthroughs=breakthroughs[:MAX_BREAKTHROUGHS],
            cross_domain=cross_domain,
        )
        logger.info(
            "insights.impact_analyzed",
            papers=len(impacts),
            breakthroughs=len(analysis.breakthroughs),
            cross_domain_groups=len(cross_domain),
        )
        return analysis

    async def _ask(self, prompt: str) -> str | None:
        """Provider answer, or None when the caller should use its fallback."""
        if self.provider is None:
            return None
        try:
            return await self.provider.answer_query(prompt)
        except Exception as exc:
            logger.warning(
                "insights.provider_failed", operation="answer_query", provider=self.provider.name, error=str(exc)
            )
            return None
