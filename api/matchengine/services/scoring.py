from __future__ import annotations

import math
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Iterable, Mapping, Sequence

from matchengine.config import DEFAULT_MATCHING_CONFIG
from matchengine.domain import (
    COSINE_DIMENSIONS,
    TRAIT_DIMENSIONS,
    TRAIT_MAX,
    TRAIT_MIN,
    GenderMixPreference,
    Participant,
)
from matchengine.errors import InvalidTraitVector

GATE_SAME_GENDER = "prefer_same_gender"
GATE_DEPENDS = "depends_without_shared_intent"
GENDER_DEPENDS_POLICIES = {"shared_intent", "strict", "ignore"}


@dataclass
class PairScore:
    user_id: str
    matched_user_id: str
    score_total: float
    score_breakdown: dict[str, Any] = field(default_factory=dict)

    @property
    def compatible(self) -> bool:
        return not self.score_breakdown.get("gates")


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    return tuple(sorted((user_a, user_b)))


def _to_float(cfg: Mapping[str, Any], key: str) -> float:
    raw = cfg.get(key, DEFAULT_MATCHING_CONFIG[key])
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float(DEFAULT_MATCHING_CONFIG[key])


def _normalize(raw: float) -> float:
    return (raw - TRAIT_MIN) / (TRAIT_MAX - TRAIT_MIN)


def _cosine(u: Sequence[float], v: Sequence[float]) -> float:
    dot = sum(a * b for a, b in zip(u, v))
    norm_u = math.sqrt(sum(a * a for a in u))
    norm_v = math.sqrt(sum(b * b for b in v))
    if norm_u == 0 or norm_v == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / (norm_u * norm_v)))


def _core(p: Participant) -> list[float]:
    return [p.trait(name) for name in COSINE_DIMENSIONS]


def _genders_differ(a: Participant, b: Participant) -> bool:
    return bool(a.gender and b.gender and a.gender != b.gender)


def _shares_intent(a: Participant, b: Participant) -> bool:
    return bool(set(a.relationship_intent) & set(b.relationship_intent))


def gender_mix_gates(a: Participant, b: Participant, policy: str = "shared_intent") -> list[str]:
    """Hard exclusions between two participants. An empty list means the pair may share a table."""
    if not _genders_differ(a, b):
        return []
    prefs = {a.gender_mix_preference, b.gender_mix_preference}
    gates: list[str] = []
    if GenderMixPreference.PREFER_SAME_GENDER in prefs:
        gates.append(GATE_SAME_GENDER)
    if GenderMixPreference.DEPENDS in prefs:
        if policy == "strict":
            if GATE_SAME_GENDER not in gates:
                gates.append(GATE_SAME_GENDER)
        elif policy == "shared_intent" and not _shares_intent(a, b):
            gates.append(GATE_DEPENDS)
    return gates


def compute_compatibility(a: Participant, b: Participant, cfg: Mapping[str, Any] | None = None) -> PairScore:
    """Score a pair in [0, 1]. Symmetric and a pure function of its inputs."""
    cfg = cfg if cfg is not None else DEFAULT_MATCHING_CONFIG
    if not isinstance(a, Participant) or not isinstance(b, Participant):
        raise InvalidTraitVector("Compatibility requires two participants")
    if len(a.trait_vector) != len(TRAIT_DIMENSIONS) or len(b.trait_vector) != len(TRAIT_DIMENSIONS):
        raise InvalidTraitVector("Trait vectors have mismatched dimensions", {"user_ids": [a.user_id, b.user_id]})

    # Order by user id so floating point sums come out identical for (a, b) and (b, a).
    first, second = (a, b) if a.user_id <= b.user_id else (b, a)

    cosine_w = _to_float(cfg, "COSINE_W")
    lifestyle_w = _to_float(cfg, "LIFESTYLE_W")
    comfort_w = _to_float(cfg, "COMFORT_W")
    tolerance = _to_float(cfg, "LIFESTYLE_TOLERANCE")
    policy = str(cfg.get("GENDER_DEPENDS_POLICY", DEFAULT_MATCHING_CONFIG["GENDER_DEPENDS_POLICY"])).lower()
    if policy not in GENDER_DEPENDS_POLICIES:
        policy = "shared_intent"

    cosine = _cosine(_core(first), _core(second))
    cosine_fit = (cosine + 1.0) / 2.0

    lifestyle_gap = abs(_normalize(first.trait("lifestyle")) - _normalize(second.trait("lifestyle")))
    lifestyle_fit = max(0.0, 1.0 - lifestyle_gap / tolerance) if tolerance > 0 else float(lifestyle_gap == 0)

    comfort_fit = min(_normalize(first.trait("comfort")), _normalize(second.trait("comfort")))

    raw_total = cosine_w * cosine_fit + lifestyle_w * lifestyle_fit + comfort_w * comfort_fit
    gates = gender_mix_gates(first, second, policy)
    total = 0.0 if gates else max(0.0, min(1.0, raw_total))

    breakdown = {
        "cosine": round(cosine, 6),
        "cosine_fit": round(cosine_fit, 6),
        "lifestyle_fit": round(lifestyle_fit, 6),
        "comfort_fit": round(comfort_fit, 6),
        "weights": {"cosine": cosine_w, "lifestyle": lifestyle_w, "comfort": comfort_w},
        "gates": gates,
    }
    return PairScore(
        user_id=a.user_id,
        matched_user_id=b.user_id,
        score_total=round(total, 6),
        score_breakdown=breakdown,
    )


class ScoreMatrix:
    """Pairwise scores for a pool, computed once and looked up by user id."""

    def __init__(self, participants: Iterable[Participant], cfg: Mapping[str, Any] | None = None):
        self.participants = list(participants)
        self._scores: dict[tuple[str, str], PairScore] = {}
        for a, b in combinations(self.participants, 2):
            self._scores[canonical_pair(a.user_id, b.user_id)] = compute_compatibility(a, b, cfg)

    def pair(self, user_a: str, user_b: str) -> PairScore:
        return self._scores[canonical_pair(user_a, user_b)]

    def score(self, user_a: str, user_b: str) -> float:
        if user_a == user_b:
            return 0.0
        return self.pair(user_a, user_b).score_total

    def compatible(self, user_a: str, user_b: str) -> bool:
        if user_a == user_b:
            return True
        return self.pair(user_a, user_b).compatible

    def compatible_with_all(self, user_id: str, member_ids: Iterable[str]) -> bool:
        return all(self.compatible(user_id, other) for other in member_ids)

    def average_with(self, user_id: str, member_ids: Sequence[str]) -> float:
        others = [m for m in member_ids if m != user_id]
        if not others:
            return 0.0
        return sum(self.score(user_id, m) for m in others) / len(others)

    def pairs(self) -> list[PairScore]:
        return [self._scores[k] for k in sorted(self._scores)]


def build_score_matrix(participants: Iterable[Participant], cfg: Mapping[str, Any] | None = None) -> ScoreMatrix:
    return ScoreMatrix(participants, cfg)


def group_score(member_ids: Sequence[str], matrix: ScoreMatrix) -> float:
    """Mean of all pairwise scores; a group of one scores 0."""
    pairs = list(combinations(member_ids, 2))
    if not pairs:
        return 0.0
    return sum(matrix.score(a, b) for a, b in pairs) / len(pairs)


def min_pair_score(member_ids: Sequence[str], matrix: ScoreMatrix) -> float:
    pairs = list(combinations(member_ids, 2))
    if not pairs:
        return 0.0
    return min(matrix.score(a, b) for a, b in pairs)
