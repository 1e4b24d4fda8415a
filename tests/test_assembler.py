"""Tests for merging the three methods into one candidate list."""

from dataclasses import replace

import pytest

import kpd_functions
from kpd_functions import (
    MalformedFactError,
    MatchCandidate,
    MatchStatus,
    MatchType,
    assemble_matches,
    find_all_matches,
    find_chains,
    find_cycles,
    find_optimal_matches,
)


@pytest.fixture
def pool(make_facts):
    return make_facts(
        [
            ("A", "B", 0.9), ("B", "A", 0.8),
            ("B", "C", 0.5), ("C", "D", 0.5), ("D", "B", 0.5),
            ("N", "C", 0.6), ("C", "A", 0.3),
        ]
    )


def test_assemble_keeps_order_and_forces_pending() -> None:
    first = MatchCandidate(MatchType.TWO_WAY_CYCLE, ("A", "B"), 1.0, MatchStatus.CONFIRMED)
    second = MatchCandidate(MatchType.CHAIN, ("N", "A"), 0.5)

    assembled = assemble_matches([first], [], [second])

    assert [c.pair_ids for c in assembled] == [("A", "B"), ("N", "A")]
    assert all(c.status is MatchStatus.PENDING for c in assembled)
    assert assembled[0] == replace(first, status=MatchStatus.PENDING)


def test_find_all_matches_concatenates_methods(pool) -> None:
    expected = (
        find_optimal_matches(pool)
        + find_cycles(pool, 3)
        + find_chains(pool, ["N"], 5)
    )

    assert find_all_matches(pool, ["N"]) == expected
    types = [c.match_type for c in expected]
    assert types.index(MatchType.CHAIN) > types.index(MatchType.THREE_WAY_CYCLE)


def test_same_pairs_may_appear_across_methods(pool) -> None:
    matches = find_all_matches(pool, ["N"], max_cycle_length=2, max_chain_length=2)

    pair_lists = [c.pair_ids for c in matches]
    assert pair_lists.count(("A", "B")) == 2


def test_parallel_run_gives_same_result(pool) -> None:
    assert find_all_matches(pool, ["N"], parallel=True) == find_all_matches(pool, ["N"])


def test_empty_pool_gives_empty_results() -> None:
    assert find_all_matches([], []) == []
    assert find_all_matches([], [], parallel=True) == []


def test_malformed_input_aborts_assembly(pool, make_fact) -> None:
    with pytest.raises(MalformedFactError):
        find_all_matches(pool + [make_fact("", "A", 0.5)], ["N"])


@pytest.mark.parametrize("parallel", [False, True])
def test_component_failure_aborts_assembly(pool, monkeypatch, parallel) -> None:
    def broken(*args, **kwargs):
        raise RuntimeError("chain search exploded")

    monkeypatch.setattr(kpd_functions, "collect_chains", broken)

    with pytest.raises(RuntimeError, match="exploded"):
        find_all_matches(pool, ["N"], parallel=parallel)


def test_to_record_uses_plain_values() -> None:
    candidate = MatchCandidate(MatchType.THREE_WAY_CYCLE, ("A", "B", "C"), 1.5)

    assert candidate.to_record() == {
        "match_type": "THREE_WAY_CYCLE",
        "status": "PENDING",
        "pair_ids": ["A", "B", "C"],
        "compatibility_score": 1.5,
    }
