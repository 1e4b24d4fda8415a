"""Tests for chain enumeration from altruistic donors."""

import logging

import numpy as np
import pytest

from instance_analysis import random_instance_facts
from kpd_functions import (
    MatchType,
    build_compat_graph,
    enumerate_chains,
    find_chains,
)


def test_every_prefix_is_a_chain(make_facts) -> None:
    facts = make_facts([("D", "E", 0.6), ("E", "F", 0.4)])

    chains = find_chains(facts, ["D"], 3)

    assert [c.pair_ids for c in chains] == [("D", "E"), ("D", "E", "F")]
    assert [c.compatibility_score for c in chains] == pytest.approx([0.6, 1.0])
    assert all(c.match_type is MatchType.CHAIN for c in chains)


def test_chain_length_is_bounded(make_facts) -> None:
    facts = make_facts([("D", "E", 1.0), ("E", "F", 1.0), ("F", "G", 1.0)])

    chains = find_chains(facts, ["D"], 3)

    assert max(len(c.pair_ids) for c in chains) == 3
    assert ("D", "E", "F", "G") not in [c.pair_ids for c in chains]


@pytest.mark.parametrize("max_length", [0, 1])
def test_too_short_limit_gives_no_chains(make_facts, max_length) -> None:
    assert find_chains(make_facts([("D", "E", 1.0)]), ["D"], max_length) == []


def test_chain_does_not_revisit_vertices(make_facts) -> None:
    facts = make_facts([("D", "E", 1.0), ("E", "F", 1.0), ("F", "E", 1.0), ("F", "D", 1.0)])

    chains = enumerate_chains(build_compat_graph(facts), "D", 6)

    assert chains == [("D", "E"), ("D", "E", "F")]


def test_branches_are_explored_depth_first(make_facts) -> None:
    facts = make_facts([("D", "E", 1.0), ("D", "F", 1.0), ("E", "G", 1.0), ("F", "G", 1.0)])

    chains = enumerate_chains(build_compat_graph(facts), "D", 3)

    assert chains == [("D", "E"), ("D", "E", "G"), ("D", "F"), ("D", "F", "G")]


def test_donors_are_explored_independently(make_facts) -> None:
    facts = make_facts([("D1", "P", 0.5), ("D2", "P", 0.7)])

    chains = find_chains(facts, ["D1", "D2", "D1"], 4)

    assert [c.pair_ids for c in chains] == [("D1", "P"), ("D2", "P")]


def test_unknown_donor_is_skipped_with_warning(make_facts, caplog) -> None:
    facts = make_facts([("D", "E", 1.0)])

    with caplog.at_level(logging.WARNING, logger="kpd_functions"):
        chains = find_chains(facts, ["ghost", "D"], 3)

    assert [c.pair_ids for c in chains] == [("D", "E")]
    assert "ghost" in caplog.text


def test_empty_facts_give_no_chains() -> None:
    assert find_chains([], ["D"], 5) == []
    assert find_chains([], [], 5) == []


@pytest.mark.parametrize("seed", [5, 6, 7])
def test_random_pools_respect_chain_invariants(seed) -> None:
    facts, altruists = random_instance_facts(
        8, edge_probability=0.3, num_altruists=2, rng=np.random.default_rng(seed)
    )
    graph = build_compat_graph(facts)

    chains = find_chains(facts, altruists, 4)

    for chain in chains:
        ids = chain.pair_ids
        assert 2 <= len(ids) <= 4
        assert ids[0] in altruists
        assert len(set(ids)) == len(ids)
        expected = sum(graph.weight(u, v) for u, v in zip(ids, ids[1:]))
        assert chain.compatibility_score == pytest.approx(expected)
    maximal = {c.pair_ids for c in chains}
    for ids in maximal:
        for cut in range(2, len(ids)):
            assert ids[:cut] in maximal


def test_long_path_does_not_hit_recursion_limit(make_facts) -> None:
    names = [f"V{idx:04d}" for idx in range(1500)]
    graph = build_compat_graph(make_facts([(u, v, 1.0) for u, v in zip(names, names[1:])]))

    chains = enumerate_chains(graph, names[0], max_chain_length=len(names))

    assert len(chains) == len(names) - 1
    assert chains[-1] == tuple(names)
