"""
Test Configuration — Fixtures for settings, a fresh platform, and the test client.

Every test gets its own MLOpsPlatform, so no state leaks between tests.
Step budgets are shrunk so retry and timeout paths run in milliseconds.
"""

from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest
from httpx import ASGITransport, AsyncClient

from api.main import app
from core.config import Settings
from db.models import ModelMetrics, ResearchPaper
from ml.platform import MLOpsPlatform, build_platform


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        step_max_retries=3,
        step_timeout_seconds=0.5,
        step_backoff_seconds=0.0,
    )


@pytest.fixture
def platform(settings: Settings) -> MLOpsPlatform:
    return build_platform(settings)


@pytest.fixture
async def client(platform: MLOpsPlatform):
    """Async test client bound to this test's platform."""
    app.state.platform = platform
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.platform = None


@pytest.fixture
def metrics():
    def make(accuracy: float, **extra) -> ModelMetrics:
        return ModelMetrics(accuracy=accuracy, **extra)

    return make


@pytest.fixture
def regression_frame() -> pd.DataFrame:
    """y = 2·x1 − x2 + 1 with a little deterministic noise."""
    rows = []
    for i in range(40):
        x1 = i / 4
        x2 = (i % 7) / 2
        noise = 0.01 * ((i % 3) - 1)
        rows.append({"x1": x1, "x2": x2, "y": 2 * x1 - x2 + 1 + noise})
    return pd.DataFrame(rows)


@pytest.fixture
def classification_frame() -> pd.DataFrame:
    rows = []
    for i in range(30):
        rows.append({"a": float(i % 3), "b": 0.1 * i, "label": "low"})
        rows.append({"a": 10.0 + i % 3, "b": 20 + 0.1 * i, "label": "high"})
    return pd.DataFrame(rows)


@pytest.fixture
def paper():
    def make(paper_id: str, keywords: list[str], **extra) -> ResearchPaper:
        return ResearchPaper(
            id=paper_id,
            title=extra.pop("title", f"Paper {paper_id}"),
            published_date=extra.pop("published_date", datetime.now(timezone.utc) - timedelta(days=30)),
            keywords=keywords,
            **extra,
        )

    return make
