from __future__ import annotations

import xml.etree.ElementTree as ET
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import numpy as np

from kpd_functions import CompatibilityFact, CompatibilityGraph, pair_order_key


@dataclass(frozen=True)
class DonorRecord:
    """Donor entry of a KEP instance file."""

    donor_id: int
    bloodtype: str
    source_patient_ids: tuple[int, ...]
    matches: tuple[tuple[int, float], ...]

    @property
    def is_altruistic(self) -> bool:
        return not self.source_patient_ids


@dataclass(frozen=True)
class RecipientRecord:
    recipient_id: int
    bloodtype: str
    c_pra: float | None


@dataclass(frozen=True)
class InstanceData:
    """Holds the parsed content of an instance file."""

    name: str
    donors: tuple[DonorRecord, ...]
    recipients: tuple[RecipientRecord, ...]

    @property
    def altruistic_donor_ids(self) -> list[int]:
        return [donor.donor_id for donor in self.donors if donor.is_altruistic]


def _parse_donor(entry: ET.Element) -> DonorRecord:
    matches = []
    for match in entry.iterfind("matches/match"):
        score_text = match.findtext("score")
        matches.append(
            (
                int(match.findtext("recipient")),
                float(score_text) if score_text is not None else float("nan"),
            )
        )
    return DonorRecord(
        donor_id=int(entry.get("donor_id")),
        bloodtype=entry.get("bloodtype", ""),
        source_patient_ids=tuple(int(s.text) for s in entry.iterfind("sources/source")),
        matches=tuple(matches),
    )


def _parse_recipient(element: ET.Element) -> RecipientRecord:
    c_pra_text = element.get("cPRA")
    return RecipientRecord(
        recipient_id=int(element.get("recip_id")),
        bloodtype=element.get("bloodtype", ""),
        c_pra=float(c_pra_text) if c_pra_text is not None else None,
    )


def load_instance(path: str | Path) -> InstanceData:
    """
    Parse a KEP XML instance into donor and recipient records.
    """
    xml_path = Path(path)
    root = ET.parse(xml_path).getroot()
    return InstanceData(
        name=xml_path.name,
        donors=tuple(_parse_donor(entry) for entry in root.iterfind("entry")),
        recipients=tuple(
            _parse_recipient(element) for element in root.iterfind("recipients/recipient")
        ),
    )


def instance_to_facts(
    instance: InstanceData,
    default_score: float = 1.0,
) -> tuple[list[CompatibilityFact], list[int]]:
    """
    Turn a parsed instance into compatibility facts.

    Every paired donor is a vertex keyed by its donor id; a match towards a
    recipient becomes an edge towards the pair holding that recipient. Matches
    listed in an instance are compatible by construction, so all three flags are
    set. Matches without a score get `default_score`. Altruistic donor ids are
    returned alongside the facts.
    """
    pair_of_patient: dict[int, int] = {}
    for donor in instance.donors:
        if donor.source_patient_ids:
            pair_of_patient[donor.source_patient_ids[0]] = donor.donor_id

    facts: list[CompatibilityFact] = []
    for donor in instance.donors:
        for recipient_id, score in donor.matches:
            target = pair_of_patient.get(recipient_id)
            if target is None or target == donor.donor_id:
                continue
            facts.append(
                CompatibilityFact(
                    donor_pair_id=donor.donor_id,
                    recipient_pair_id=target,
                    blood_type_compatible=True,
                    hla_compatible=True,
                    crossmatch_compatible=True,
                    compatibility_score=default_score if score != score else score,
                )
            )
    return facts, instance.altruistic_donor_ids


def random_instance_facts(
    num_pairs: int,
    edge_probability: float = 0.2,
    num_altruists: int = 0,
    rng: np.random.Generator | None = None,
) -> tuple[list[CompatibilityFact], list[str]]:
    """
    Generate a synthetic pool of compatibility facts.

    Pairs are named ``P001``, ``P002``, ... and altruistic donors ``A001``, ...
    Every ordered pair gets a fact; it is fully compatible with probability
    `edge_probability` and otherwise fails exactly one of the three checks.
    Altruistic donors only donate, never receive.
    """
    if num_pairs < 0 or num_altruists < 0:
        raise ValueError("num_pairs and num_altruists must be non-negative")
    if not 0.0 <= edge_probability <= 1.0:
        raise ValueError("edge_probability must be in [0,1]")

    rng = rng or np.random.default_rng()
    pairs = [f"P{idx:03d}" for idx in range(1, num_pairs + 1)]
    altruists = [f"A{idx:03d}" for idx in range(1, num_altruists + 1)]

    facts: list[CompatibilityFact] = []
    for donor in altruists + pairs:
        for recipient in pairs:
            if donor == recipient:
                continue
            flags = [True, True, True]
            if rng.random() >= edge_probability:
                flags[int(rng.integers(3))] = False
            facts.append(
                CompatibilityFact(
                    donor_pair_id=donor,
                    recipient_pair_id=recipient,
                    blood_type_compatible=flags[0],
                    hla_compatible=flags[1],
                    crossmatch_compatible=flags[2],
                    compatibility_score=round(float(rng.uniform(0.1, 1.0)), 3),
                    distance_km=round(float(rng.uniform(0.0, 800.0)), 1),
                )
            )
    return facts, altruists


def summarize_instance(instance: InstanceData) -> dict[str, Any]:
    """
    Produce high-level statistics for a parsed instance.
    """
    donors = instance.donors
    altruistic = [donor for donor in donors if donor.is_altruistic]
    scores = [score for donor in donors for (_, score) in donor.matches if score == score]
    total_matches = sum(len(donor.matches) for donor in donors)
    return {
        "instance": instance.name,
        "donors_total": len(donors),
        "donors_altruistic": len(altruistic),
        "donors_paired": len(donors) - len(altruistic),
        "donors_without_matches": sum(1 for donor in donors if not donor.matches),
        "recipients_total": len(instance.recipients),
        "matches_total": total_matches,
        "avg_matches_per_donor": total_matches / len(donors) if donors else None,
        "avg_match_score": float(np.mean(scores)) if scores else None,
        "donor_bloodtype_counts": dict(Counter(donor.bloodtype for donor in donors)),
        "recipient_bloodtype_counts": dict(
            Counter(recipient.bloodtype for recipient in instance.recipients)
        ),
        "altruistic_donor_ids": [donor.donor_id for donor in altruistic],
    }


def summarize_graph(
    graph: CompatibilityGraph,
    altruistic_donor_ids: Iterable[Any] = (),
) -> dict[str, Any]:
    """
    Degree and weight statistics of a compatibility graph.
    """
    out_degree = np.array([len(graph.successors(v)) for v in graph.vertices], dtype=float)
    in_degree = Counter(v for _, v, _ in graph.edges())
    weights = np.array([w for _, _, w in graph.edges()], dtype=float)
    reciprocal = sum(
        1
        for u, v, _ in graph.edges()
        if pair_order_key(u) < pair_order_key(v) and graph.has_edge(v, u)
    )
    altruists = [a for a in altruistic_donor_ids if a in graph]
    return {
        "vertices": len(graph),
        "edges": graph.num_edges,
        "reciprocal_pairs": reciprocal,
        "altruistic_donors": len(altruists),
        "isolated_vertices": sum(
            1 for v in graph.vertices if not graph.successors(v) and not in_degree[v]
        ),
        "avg_out_degree": float(out_degree.mean()) if out_degree.size else None,
        "avg_edge_weight": float(weights.mean()) if weights.size else None,
        "max_edge_weight": float(weights.max()) if weights.size else None,
    }


def summarize_instances(paths: Iterable[str | Path]) -> list[dict[str, Any]]:
    """
    Convenience helper that loads and summarizes many instance files.
    """
    return [summarize_instance(load_instance(path)) for path in paths]
