"""
Concept extraction and paper scoring for the research knowledge graph.

Concepts come from two places:
  - the paper's own keywords (kept verbatim)
  - a fixed domain vocabulary matched by containment in the lower-cased
    abstract, so multi-word terms such as "fuel cell" match as phrases
"""

from datetime import datetime

from db.models import ResearchPaper, as_utc, utcnow

CONCEPT_VOCABULARY = (
    "electrode",
    "microbial",
    "fuel cell",
    "biofilm",
    "current",
    "voltage",
    "efficiency",
)

CITATION_WEIGHT = 0.1
JOURNAL_BONUS = 0.2
RECENCY_BONUS_MAX = 2.0
RECENCY_DECAY_PER_YEAR = 0.1
DAYS_PER_YEAR = 365


def extract_concepts(paper: ResearchPaper, vocabulary: tuple[str, ...] = CONCEPT_VOCABULARY) -> list[str]:
    """Keywords first, then vocabulary hits; duplicates dropped, order kept."""
    abstract = paper.abstract.lower()
    found = [kw.strip() for kw in paper.keywords if kw.strip()]
    found.extend(term for term in vocabulary if term in abstract)
    return list(dict.fromkeys(found))


def paper_weight(paper: ResearchPaper, now: datetime | None = None) -> float:
    """
    1.0 base
    + 0.1 per citation
    + 0.2 when published in a journal
    + recency bonus decaying from 2.0 by 0.1 per year of age
    """
    now = as_utc(now) if now else utcnow()
    age_years = max((now - paper.published_date).total_seconds(), 0.0) / 86400 / DAYS_PER_YEAR

    weight = 1.0
    weight += CITATION_WEIGHT * len(paper.citations)
    if paper.journal:
        weight += JOURNAL_BONUS
    weight += max(0.0, RECENCY_BONUS_MAX - RECENCY_DECAY_PER_YEAR * age_years)
    return weight
