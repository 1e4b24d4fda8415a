"""Pytest configuration and fixtures for the matching tests."""

import sys
from collections.abc import Callable, Iterable
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import pytest  # noqa: E402

# Make the top-level modules importable without installing the project
ROOT_PATH = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_PATH))

from kpd_functions import CompatibilityFact  # noqa: E402


@pytest.fixture
def make_fact() -> Callable[..., CompatibilityFact]:
    """Factory for a single fact, fully compatible unless a flag is switched off."""

    def _factory(
        donor,
        recipient,
        score: float | None = 1.0,
        *,
        blood: bool = True,
        hla: bool = True,
        crossmatch: bool = True,
        distance_km: float | None = None,
    ) -> CompatibilityFact:
        return CompatibilityFact(
            donor_pair_id=donor,
            recipient_pair_id=recipient,
            blood_type_compatible=blood,
            hla_compatible=hla,
            crossmatch_compatible=crossmatch,
            compatibility_score=score,
            distance_km=distance_km,
        )

    return _factory


@pytest.fixture
def make_facts(make_fact) -> Callable[[Iterable[tuple]], list[CompatibilityFact]]:
    """Factory turning (donor, recipient, score) triples into compatible facts."""

    def _factory(edges: Iterable[tuple]) -> list[CompatibilityFact]:
        return [make_fact(u, v, w) for u, v, w in edges]

    return _factory
