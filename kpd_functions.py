from __future__ import annotations

import logging
import math
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from typing import (
    Any,
    Dict,
    FrozenSet,
    Hashable,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

import matplotlib
import networkx as nx
import pulp

logger = logging.getLogger(__name__)

PairId = Hashable
Edge = Tuple[PairId, PairId]

AdjOut = Dict[PairId, Dict[PairId, float]]

MATCHING_BACKENDS = ("blossom", "ip")

_EXHAUSTED = object()


class KPDError(Exception):
    """Base class for errors raised while computing exchange candidates."""


class MalformedFactError(KPDError, ValueError):
    """A compatibility fact cannot be placed in the compatibility graph."""


class MatchingSolverError(KPDError, RuntimeError):
    """The matching solver failed to produce an optimal matching."""


class MatchType(str, Enum):
    TWO_WAY_CYCLE = "TWO_WAY_CYCLE"
    THREE_WAY_CYCLE = "THREE_WAY_CYCLE"
    CHAIN = "CHAIN"
    DIRECT_EXCHANGE = "DIRECT_EXCHANGE"


class MatchStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class CompatibilityFact:
    """Pre-computed compatibility of one donor (pair) towards one recipient (pair)."""

    donor_pair_id: PairId
    recipient_pair_id: PairId
    blood_type_compatible: bool
    hla_compatible: bool
    crossmatch_compatible: bool
    compatibility_score: Optional[float]
    distance_km: Optional[float] = None

    @property
    def is_fully_compatible(self) -> bool:
        return bool(
            self.blood_type_compatible
            and self.hla_compatible
            and self.crossmatch_compatible
        )


@dataclass(frozen=True)
class CompatibilityGraph:
    """
    Directed weighted compatibility graph over pair identifiers.

    Vertices and successor lists are kept in the fixed identifier order given by
    `pair_order_key`, so every traversal over the graph is deterministic. The
    graph is read-only once built; finders share one instance without locking.
    """

    vertices: Tuple[PairId, ...]
    adj_out: AdjOut

    def __contains__(self, vertex: object) -> bool:
        return vertex in self.adj_out

    def __len__(self) -> int:
        return len(self.vertices)

    @property
    def num_edges(self) -> int:
        return sum(len(targets) for targets in self.adj_out.values())

    def successors(self, vertex: PairId) -> List[PairId]:
        return list(self.adj_out.get(vertex, {}))

    def has_edge(self, u: PairId, v: PairId) -> bool:
        return v in self.adj_out.get(u, {})

    def weight(self, u: PairId, v: PairId) -> float:
        return self.adj_out[u][v]

    def edges(self) -> Iterator[Tuple[PairId, PairId, float]]:
        for u, targets in self.adj_out.items():
            for v, w in targets.items():
                yield u, v, w


@dataclass(frozen=True)
class MatchCandidate:
    match_type: MatchType
    pair_ids: Tuple[PairId, ...]
    compatibility_score: float
    status: MatchStatus = MatchStatus.PENDING

    def to_record(self) -> Dict[str, Any]:
        """Plain mapping handed to the persistence collaborator."""
        return {
            "match_type": self.match_type.value,
            "status": self.status.value,
            "pair_ids": list(self.pair_ids),
            "compatibility_score": self.compatibility_score,
        }


def pair_order_key(pair_id: PairId) -> Tuple[str, Any]:
    """Fixed total order over identifiers: type name first, then natural order."""
    return (type(pair_id).__name__, pair_id)


def _check_pair_id(value: object, role: str, index: int) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MalformedFactError(f"fact #{index}: {role} pair id is missing")


def _fact_weight(fact: CompatibilityFact, index: int) -> float:
    try:
        weight = float(fact.compatibility_score)
    except (TypeError, ValueError) as exc:
        raise MalformedFactError(
            f"fact #{index}: compatibility score {fact.compatibility_score!r} is not a number"
        ) from exc
    if not math.isfinite(weight):
        raise MalformedFactError(f"fact #{index}: compatibility score must be finite")
    return weight


def build_compat_graph(facts: Iterable[CompatibilityFact]) -> CompatibilityGraph:
    """
    Build the directed compatibility graph from compatibility facts.

    Parameters
    ----------
    facts : Iterable[CompatibilityFact]
        Every fact contributes its two endpoints as vertices. A donor -> recipient
        edge weighted by the compatibility score is added only when the blood
        type, HLA and crossmatch flags are all true. A repeated (donor, recipient)
        fact overwrites the earlier weight.

    Returns
    -------
    CompatibilityGraph
        Empty when no facts are given.

    Raises
    ------
    MalformedFactError
        On a missing identifier, a self-referencing fact, or a fully compatible
        fact without a finite score. No partial graph is returned.
    """
    adjacency: AdjOut = {}
    for index, fact in enumerate(facts):
        donor = fact.donor_pair_id
        recipient = fact.recipient_pair_id
        _check_pair_id(donor, "donor", index)
        _check_pair_id(recipient, "recipient", index)
        if donor == recipient:
            raise MalformedFactError(f"fact #{index}: pair {donor!r} cannot donate to itself")
        adjacency.setdefault(donor, {})
        adjacency.setdefault(recipient, {})
        if fact.is_fully_compatible:
            adjacency[donor][recipient] = _fact_weight(fact, index)

    ordered = sorted(adjacency, key=pair_order_key)
    adj_out: AdjOut = {
        u: {v: adjacency[u][v] for v in sorted(adjacency[u], key=pair_order_key)}
        for u in ordered
    }
    graph = CompatibilityGraph(vertices=tuple(ordered), adj_out=adj_out)
    logger.debug(
        "Built compatibility graph with %d vertices and %d edges",
        len(graph),
        graph.num_edges,
    )
    return graph


def path_score(graph: CompatibilityGraph, pair_ids: Sequence[PairId], closed: bool = False) -> float:
    """Sum of edge weights along `pair_ids`; `closed` adds the wrap-around edge."""
    order = tuple(pair_ids)
    if closed:
        edges = list(zip(order, order[1:] + order[:1]))
    else:
        edges = list(zip(order, order[1:]))
    return sum(graph.weight(u, v) for u, v in edges)


def enumerate_two_way_cycles(graph: CompatibilityGraph) -> List[MatchCandidate]:
    """
    Greedy pass over reciprocal pairs.

    Each vertex joins at most one 2-cycle: the first reciprocal partner found in
    identifier order wins, even if a later partner would score higher.
    """
    cycles: List[MatchCandidate] = []
    visited: Set[PairId] = set()
    for u in graph.vertices:
        if u in visited:
            continue
        u_key = pair_order_key(u)
        for v in graph.successors(u):
            if v in visited or not graph.has_edge(v, u):
                continue
            if u_key >= pair_order_key(v):
                continue
            order = (u, v)
            cycles.append(
                MatchCandidate(
                    match_type=MatchType.TWO_WAY_CYCLE,
                    pair_ids=order,
                    compatibility_score=path_score(graph, order, closed=True),
                )
            )
            visited.update(order)
            break
    logger.debug("Found %d two-way cycles", len(cycles))
    return cycles


def enumerate_three_way_cycles(graph: CompatibilityGraph) -> List[MatchCandidate]:
    """
    All directed 3-cycles, one per vertex set.

    The first traversal of a set in identifier order is kept, which starts the
    cycle at the set's smallest identifier. The reverse orientation of the same
    three pairs is not reported again.
    """
    cycles: List[MatchCandidate] = []
    seen: Set[FrozenSet[PairId]] = set()
    for v1 in graph.vertices:
        for v2 in graph.successors(v1):
            for v3 in graph.successors(v2):
                if v3 == v1 or not graph.has_edge(v3, v1):
                    continue
                members = frozenset((v1, v2, v3))
                if members in seen:
                    continue
                seen.add(members)
                order = (v1, v2, v3)
                cycles.append(
                    MatchCandidate(
                        match_type=MatchType.THREE_WAY_CYCLE,
                        pair_ids=order,
                        compatibility_score=path_score(graph, order, closed=True),
                    )
                )
    logger.debug("Found %d three-way cycles", len(cycles))
    return cycles


def collect_cycles(graph: CompatibilityGraph, max_cycle_length: int) -> List[MatchCandidate]:
    """Run the 2-cycle pass when `max_cycle_length >= 2`, the 3-cycle pass when `>= 3`."""
    cycles: List[MatchCandidate] = []
    if max_cycle_length >= 2:
        cycles.extend(enumerate_two_way_cycles(graph))
    if max_cycle_length >= 3:
        cycles.extend(enumerate_three_way_cycles(graph))
    return cycles


def enumerate_chains(
    graph: CompatibilityGraph,
    altruistic_donor: PairId,
    max_chain_length: int,
) -> List[Tuple[PairId, ...]]:
    """
    Enumerate donation chains started by one altruistic donor.

    Parameters
    ----------
    graph : CompatibilityGraph
        Read-only compatibility graph.
    altruistic_donor : PairId
        Start vertex of every chain.
    max_chain_length : int
        Maximum number of vertices in a chain, donor included.

    Returns
    -------
    list[tuple]
        Every simple path of two or more vertices starting at the donor, in
        depth-first order. A path of length L contributes all of its L - 1
        prefixes, each as its own chain.
    """
    chains: List[Tuple[PairId, ...]] = []
    if altruistic_donor not in graph or max_chain_length < 2:
        return chains

    path: List[PairId] = [altruistic_donor]
    on_path: Set[PairId] = {altruistic_donor}
    # one successor iterator per vertex on the path
    stack: List[Iterator[PairId]] = [iter(graph.successors(altruistic_donor))]
    while stack:
        neighbor = next(stack[-1], _EXHAUSTED)
        if neighbor is _EXHAUSTED:
            stack.pop()
            on_path.discard(path.pop())
            continue
        if neighbor in on_path:
            continue
        path.append(neighbor)
        on_path.add(neighbor)
        chains.append(tuple(path))
        if len(path) < max_chain_length:
            stack.append(iter(graph.successors(neighbor)))
        else:
            on_path.discard(path.pop())
    return chains


def collect_chains(
    graph: CompatibilityGraph,
    altruistic_donor_ids: Iterable[PairId],
    max_chain_length: int,
) -> List[MatchCandidate]:
    """Chain candidates for each altruistic donor, each donor explored independently."""
    chains: List[MatchCandidate] = []
    explored: Set[PairId] = set()
    for donor in altruistic_donor_ids:
        if donor in explored:
            continue
        explored.add(donor)
        if donor not in graph:
            logger.warning("Altruistic donor %s is not in the compatibility graph", donor)
            continue
        for chain in enumerate_chains(graph, donor, max_chain_length):
            chains.append(
                MatchCandidate(
                    match_type=MatchType.CHAIN,
                    pair_ids=chain,
                    compatibility_score=path_score(graph, chain),
                )
            )
    return chains


def _canonical_edge(u: PairId, v: PairId) -> Edge:
    return (u, v) if pair_order_key(u) < pair_order_key(v) else (v, u)


def undirected_weights(graph: CompatibilityGraph) -> Dict[Edge, float]:
    """
    Collapse the directed graph into weighted undirected edges.

    Keys are (lower, higher) identifier pairs. When both directions exist, the
    weight of the lower -> higher edge is used, whatever order the facts came in.
    """
    return {edge: graph.weight(*donation) for edge, donation in weighted_donations(graph).items()}


def weighted_donations(graph: CompatibilityGraph) -> Dict[Edge, Edge]:
    """
    Directed edge supplying the weight of each undirected (lower, higher) edge.

    The lower -> higher edge when it exists, otherwise the only edge present.
    """
    donations: Dict[Edge, Edge] = {}
    for u, v, _ in graph.edges():
        edge = _canonical_edge(u, v)
        if edge == (u, v) or edge not in donations:
            donations[edge] = (u, v)
    return donations


def make_pulp_solver(
    solver: str,
    time_limit: Optional[int] = None,
    mip_gap: Optional[float] = None,
) -> pulp.LpSolver:
    """Return a configured PuLP solver."""
    solver_name = (solver or "CBC").upper()
    gap_kwargs = {}
    if mip_gap is not None:
        gap_kwargs["gapRel"] = mip_gap
    if solver_name == "GUROBI":
        gurobi = pulp.GUROBI(msg=False, timeLimit=time_limit, **gap_kwargs)
        if gurobi.available():
            return gurobi
        logger.warning("Gurobi is not available, falling back to CBC")
    return pulp.PULP_CBC_CMD(msg=False, timeLimit=time_limit, **gap_kwargs)


def _blossom_matching(weights: Dict[Edge, float]) -> Set[Edge]:
    G = nx.Graph()
    for (u, v), w in weights.items():
        G.add_edge(u, v, weight=w)
    try:
        matched = nx.max_weight_matching(G, maxcardinality=False, weight="weight")
    except nx.NetworkXException as exc:
        raise MatchingSolverError("Blossom matching failed") from exc
    return {_canonical_edge(u, v) for u, v in matched}


def _ip_matching(
    weights: Dict[Edge, float],
    solver: str,
    time_limit: Optional[int] = None,
    mip_gap: Optional[float] = None,
) -> Set[Edge]:
    problem = pulp.LpProblem("MaxWeightMatching", pulp.LpMaximize)
    x_vars = {
        edge: pulp.LpVariable(f"x_{idx}", lowBound=0, upBound=1, cat="Binary")
        for idx, edge in enumerate(weights)
    }
    problem += pulp.lpSum(x_vars[edge] * w for edge, w in weights.items())

    incident: Dict[PairId, List[pulp.LpVariable]] = defaultdict(list)
    for (u, v), var in x_vars.items():
        incident[u].append(var)
        incident[v].append(var)
    for idx, terms in enumerate(incident.values()):
        if len(terms) > 1:
            problem += pulp.lpSum(terms) <= 1, f"disjoint_{idx}"

    problem.solve(make_pulp_solver(solver, time_limit=time_limit, mip_gap=mip_gap))
    if problem.status != pulp.LpStatusOptimal:
        raise MatchingSolverError(
            f"Matching IP ended with status {pulp.LpStatus.get(problem.status, problem.status)}"
        )
    return {
        edge for edge, var in x_vars.items() if var.value() is not None and var.value() > 0.5
    }


def max_weight_matching(
    graph: CompatibilityGraph,
    backend: str = "blossom",
    solver: str = "CBC",
    time_limit: Optional[int] = None,
    mip_gap: Optional[float] = None,
) -> List[MatchCandidate]:
    """
    Maximum-weight matching over the undirected view of the graph.

    Parameters
    ----------
    graph : CompatibilityGraph
        Read-only compatibility graph.
    backend : {'blossom', 'ip'}
        'blossom' runs Edmonds' algorithm (networkx); 'ip' solves the matching
        integer program with PuLP.
    solver : str
        PuLP solver name for the 'ip' backend ('CBC' or 'GUROBI').
    time_limit : int, optional
        Solver time limit in seconds for the 'ip' backend.
    mip_gap : float, optional
        Relative optimality gap accepted by the 'ip' backend solver.

    Returns
    -------
    list[MatchCandidate]
        One TWO_WAY_CYCLE candidate per matched edge, ordered by (lower id,
        higher id). Its pair ids are the (donor, recipient) edge that supplied
        the undirected weight, so they always name an existing donation.
    """
    if backend not in MATCHING_BACKENDS:
        raise ValueError(f"Unsupported matching backend {backend!r}")
    donations = weighted_donations(graph)
    weights = {edge: graph.weight(*donation) for edge, donation in donations.items()}
    if not weights:
        return []

    if backend == "blossom":
        selected = _blossom_matching(weights)
    else:
        selected = _ip_matching(weights, solver, time_limit=time_limit, mip_gap=mip_gap)

    covered: Set[PairId] = set()
    for u, v in selected:
        if u in covered or v in covered:
            raise MatchingSolverError(f"Solver returned an invalid matching at {u!r}-{v!r}")
        covered.update((u, v))

    ordered = sorted(selected, key=lambda e: (pair_order_key(e[0]), pair_order_key(e[1])))
    return [
        MatchCandidate(
            match_type=MatchType.TWO_WAY_CYCLE,
            pair_ids=donations[edge],
            compatibility_score=weights[edge],
        )
        for edge in ordered
    ]


def find_optimal_matches(
    facts: Iterable[CompatibilityFact],
    backend: str = "blossom",
    solver: str = "CBC",
    time_limit: Optional[int] = None,
    mip_gap: Optional[float] = None,
) -> List[MatchCandidate]:
    """Build the graph and return its maximum-weight matching as candidates."""
    facts = list(facts)
    logger.info("Starting optimal matching with %d compatibility facts", len(facts))
    graph = build_compat_graph(facts)
    matches = max_weight_matching(
        graph, backend=backend, solver=solver, time_limit=time_limit, mip_gap=mip_gap
    )
    logger.info("Found %d optimal matches", len(matches))
    return matches


def find_cycles(facts: Iterable[CompatibilityFact], max_cycle_length: int) -> List[MatchCandidate]:
    """Build the graph and return its 2- and 3-cycles up to `max_cycle_length`."""
    facts = list(facts)
    logger.info("Finding cycles with max length %d", max_cycle_length)
    graph = build_compat_graph(facts)
    cycles = collect_cycles(graph, max_cycle_length)
    logger.info("Found %d cycles", len(cycles))
    return cycles


def find_chains(
    facts: Iterable[CompatibilityFact],
    altruistic_donor_ids: Iterable[PairId],
    max_chain_length: int,
) -> List[MatchCandidate]:
    """Build the graph and return the chains seeded by the altruistic donors."""
    facts = list(facts)
    donors = list(altruistic_donor_ids)
    logger.info(
        "Finding chains with max length %d from %d altruistic donors",
        max_chain_length,
        len(donors),
    )
    graph = build_compat_graph(facts)
    chains = collect_chains(graph, donors, max_chain_length)
    logger.info("Found %d chains", len(chains))
    return chains


def assemble_matches(*groups: Iterable[MatchCandidate]) -> List[MatchCandidate]:
    """Concatenate candidate groups in order, every candidate marked PENDING."""
    assembled: List[MatchCandidate] = []
    for group in groups:
        for candidate in group:
            if candidate.status is not MatchStatus.PENDING:
                candidate = replace(candidate, status=MatchStatus.PENDING)
            assembled.append(candidate)
    return assembled


def find_all_matches(
    facts: Iterable[CompatibilityFact],
    altruistic_donor_ids: Iterable[PairId] = (),
    max_cycle_length: int = 3,
    max_chain_length: int = 5,
    backend: str = "blossom",
    solver: str = "CBC",
    time_limit: Optional[int] = None,
    mip_gap: Optional[float] = None,
    parallel: bool = False,
) -> List[MatchCandidate]:
    """
    Optimal matching, cycles and chains over one graph snapshot.

    Results come back as matching candidates, then cycles, then chains. Pairs may
    appear in more than one candidate; precedence is decided downstream. Any
    failure aborts the whole call. With `parallel=True` the three methods run on
    a thread pool over the same read-only graph.
    """
    facts = list(facts)
    donors = list(altruistic_donor_ids)
    logger.info("Finding all matches over %d compatibility facts", len(facts))
    graph = build_compat_graph(facts)

    tasks = [
        (max_weight_matching, (graph, backend, solver, time_limit, mip_gap)),
        (collect_cycles, (graph, max_cycle_length)),
        (collect_chains, (graph, donors, max_chain_length)),
    ]
    if parallel:
        with ThreadPoolExecutor(max_workers=len(tasks)) as pool:
            futures = [pool.submit(func, *args) for func, args in tasks]
            results = [future.result() for future in futures]
    else:
        results = [func(*args) for func, args in tasks]

    matches = assemble_matches(*results)
    logger.info("Found %d total matches", len(matches))
    return matches


def visualize_compatibility_graph(
    graph: CompatibilityGraph,
    candidates: Sequence[MatchCandidate] = (),
    altruistic_donor_ids: Iterable[PairId] = (),
    layout: str = "spring",
    seed: Optional[int] = None,
    ax=None,
    node_size: int = 500,
) -> Tuple["matplotlib.figure.Figure", "matplotlib.axes.Axes"]:
    """
    Draw the compatibility graph, highlighting the arcs used by `candidates`.

    Parameters
    ----------
    graph : CompatibilityGraph
        Graph to draw.
    candidates : Sequence[MatchCandidate]
        Candidates whose arcs are drawn in the colour of their match type.
    altruistic_donor_ids : Iterable
        Vertices drawn as altruistic donors.
    layout : {'spring', 'kamada_kawai', 'circular'}
        Network layout algorithm.
    seed : int, optional
        Random seed passed to the spring layout.
    ax : matplotlib.axes.Axes, optional
        Existing axes to draw on. A new figure/axes pair is created if omitted.
    node_size : int
        Node marker size passed to the NetworkX drawing util.

    Returns
    -------
    fig, ax : matplotlib Figure and Axes
    """
    import matplotlib.pyplot as plt

    G = nx.DiGraph()
    G.add_nodes_from(graph.vertices)
    for u, v, w in graph.edges():
        G.add_edge(u, v, weight=w)

    if layout == "spring":
        pos = nx.spring_layout(G, seed=seed)
    elif layout == "kamada_kawai":
        pos = nx.kamada_kawai_layout(G)
    elif layout == "circular":
        pos = nx.circular_layout(G)
    else:
        raise ValueError("Unsupported layout")

    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 6))
    else:
        fig = ax.figure

    cmap = matplotlib.colormaps["tab10"]
    type_colors = {match_type: cmap(idx) for idx, match_type in enumerate(MatchType)}

    altruists = set(altruistic_donor_ids)
    matched = {v for candidate in candidates for v in candidate.pair_ids}
    node_colors = []
    for v in graph.vertices:
        if v in altruists:
            node_colors.append("gold")
        elif v in matched:
            node_colors.append("lightsteelblue")
        else:
            node_colors.append((0.8, 0.8, 0.8))

    highlighted: Dict[Edge, Any] = {}
    for candidate in candidates:
        order = candidate.pair_ids
        closed = candidate.match_type is not MatchType.CHAIN
        arcs = list(zip(order, order[1:] + order[:1])) if closed else list(zip(order, order[1:]))
        for u, v in arcs:
            if G.has_edge(u, v):
                highlighted.setdefault((u, v), type_colors[candidate.match_type])

    nx.draw_networkx_nodes(
        G,
        pos,
        node_color=node_colors,
        node_size=node_size,
        ax=ax,
        edgecolors="black",
    )
    nx.draw_networkx_labels(G, pos, ax=ax, font_size=8)
    plain = [edge for edge in G.edges() if edge not in highlighted]
    if plain:
        nx.draw_networkx_edges(
            G, pos, edgelist=plain, ax=ax, arrows=True, arrowstyle="->", arrowsize=12, alpha=0.4
        )
    if highlighted:
        nx.draw_networkx_edges(
            G,
            pos,
            edgelist=list(highlighted),
            edge_color=list(highlighted.values()),
            width=2.5,
            ax=ax,
            arrows=True,
            arrowstyle="->",
            arrowsize=14,
        )

    used_types = sorted({c.match_type for c in candidates}, key=lambda t: t.value)
    handles = [
        plt.Line2D([0], [0], color=type_colors[match_type], linewidth=2.5)
        for match_type in used_types
    ]
    labels = [match_type.value for match_type in used_types]
    if handles:
        ax.legend(handles, labels, loc="best", fontsize=8)

    ax.set_axis_off()
    ax.set_title("Compatibility Graph")
    return fig, ax
