from __future__ import annotations

import logging
import os
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import numpy as np

from kpd_functions import (
    MATCHING_BACKENDS,
    CompatibilityFact,
    MatchCandidate,
    MatchStatus,
    MatchType,
    PairId,
    find_all_matches,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "KPD_"


class FactSource(Protocol):
    """Provider of the latest compatibility facts and altruistic donors."""

    def fetch_facts(self) -> Sequence[CompatibilityFact]:
        ...

    def fetch_altruistic_donors(self) -> Sequence[PairId]:
        ...


class MatchSink(Protocol):
    """
    Receiver of computed candidates.

    Implementations assign durable identifiers and timestamps, persist the
    candidates and publish the "match found" notifications.
    """

    def record_matches(self, candidates: Sequence[MatchCandidate]) -> Any:
        ...


@dataclass
class MatchingConfig:
    """
    Parameters of one matching round.

    Attributes
    ----------
    max_cycle_length : int
        Longest cycle searched for (2 or 3 are meaningful).
    max_chain_length : int
        Maximum number of vertices in a chain, altruistic donor included.
    matching_backend : str
        'blossom' or 'ip'.
    solver : str
        PuLP solver used by the 'ip' backend.
    time_limit : int | None
        Solver time limit in seconds for the 'ip' backend.
    mip_gap : float | None
        Relative optimality gap accepted by the 'ip' backend solver, in [0, 1].
    parallel : bool
        Run matching, cycles and chains on a thread pool.
    """

    max_cycle_length: int = 3
    max_chain_length: int = 5
    matching_backend: str = "blossom"
    solver: str = "CBC"
    time_limit: Optional[int] = None
    mip_gap: Optional[float] = None
    parallel: bool = False

    def __post_init__(self) -> None:
        if self.max_cycle_length < 0:
            raise ValueError(f"max_cycle_length must be non-negative, got {self.max_cycle_length}")
        if self.max_chain_length < 0:
            raise ValueError(f"max_chain_length must be non-negative, got {self.max_chain_length}")
        if self.matching_backend not in MATCHING_BACKENDS:
            raise ValueError(
                f"matching_backend must be one of {MATCHING_BACKENDS}, got {self.matching_backend!r}"
            )
        if self.time_limit is not None and self.time_limit <= 0:
            raise ValueError(f"time_limit must be positive, got {self.time_limit}")
        if self.mip_gap is not None and not 0.0 <= self.mip_gap <= 1.0:
            raise ValueError(f"mip_gap must be within [0, 1], got {self.mip_gap}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MatchingConfig":
        """Read overrides from ``KPD_*`` environment variables."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name, cast in (
            ("max_cycle_length", int),
            ("max_chain_length", int),
            ("matching_backend", str),
            ("solver", str),
            ("time_limit", int),
            ("mip_gap", float),
        ):
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw.strip():
                values[name] = cast(raw.strip())
        parallel = environ.get(ENV_PREFIX + "PARALLEL")
        if parallel is not None:
            values["parallel"] = parallel.strip().lower() in ("1", "true", "yes", "on")
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def run_matching_round(
    source: FactSource,
    sink: MatchSink,
    config: Optional[MatchingConfig] = None,
) -> List[MatchCandidate]:
    """
    Fetch facts, compute all candidates over one graph snapshot and hand them to `sink`.

    Errors from the source, the core or the sink propagate to the caller.
    """
    config = config or MatchingConfig()
    facts = list(source.fetch_facts())
    donors = list(source.fetch_altruistic_donors())
    logger.info(
        "Running matching round over %d facts and %d altruistic donors (%s)",
        len(facts),
        len(donors),
        config.to_dict(),
    )
    candidates = find_all_matches(
        facts,
        donors,
        max_cycle_length=config.max_cycle_length,
        max_chain_length=config.max_chain_length,
        backend=config.matching_backend,
        solver=config.solver,
        time_limit=config.time_limit,
        mip_gap=config.mip_gap,
        parallel=config.parallel,
    )
    sink.record_matches(candidates)
    logger.info("Handed %d candidates to the match sink", len(candidates))
    return candidates


def handle_pair_registered(
    pair_id: PairId,
    source: FactSource,
    sink: MatchSink,
    config: Optional[MatchingConfig] = None,
) -> Optional[List[MatchCandidate]]:
    """
    React to a "pair registered" notification with a fresh matching round.

    Event-triggered rounds are best effort: a failure is logged and skipped,
    and None is returned instead of the candidates.
    """
    logger.info("Processing pair registration for pair %s", pair_id)
    try:
        candidates = run_matching_round(source, sink, config)
    except Exception:
        logger.exception("Matching round triggered by pair %s failed", pair_id)
        return None
    logger.info("Processed pair registration for pair %s, %d candidates", pair_id, len(candidates))
    return candidates


def summarize_matches(candidates: Sequence[MatchCandidate]) -> Dict[str, Any]:
    """Counts per type and status, plus the mean compatibility score."""
    by_type = Counter(candidate.match_type for candidate in candidates)
    by_status = Counter(candidate.status for candidate in candidates)
    scores = np.array([candidate.compatibility_score for candidate in candidates], dtype=float)
    return {
        "total_matches": len(candidates),
        "pending_matches": by_status[MatchStatus.PENDING],
        "completed_matches": by_status[MatchStatus.COMPLETED],
        "by_type": {match_type.value: by_type[match_type] for match_type in MatchType},
        "by_status": {status.value: by_status[status] for status in MatchStatus},
        "average_compatibility_score": float(scores.mean()) if scores.size else None,
    }
