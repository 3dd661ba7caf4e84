from typing import Any, Sequence

from matchengine.services.scoring import ScoreMatrix, group_score, min_pair_score


def group_statistics(member_ids: Sequence[str], matrix: ScoreMatrix) -> dict[str, Any]:
    return {
        "size": len(member_ids),
        "aggregate_score": round(group_score(member_ids, matrix), 6),
        "min_score": round(min_pair_score(member_ids, matrix), 6),
    }


def run_statistics(groups: Sequence[Sequence[str]], unassignable_count: int, matrix: ScoreMatrix) -> dict[str, Any]:
    """Summary of an allocation: ``groups`` is a list of member id lists."""
    per_group = [group_statistics(members, matrix) for members in groups]
    assigned = sum(s["size"] for s in per_group)
    scored = [s for s in per_group if s["size"] > 1]
    return {
        "total_groups": len(per_group),
        "total_assigned": assigned,
        "total_unassignable": int(unassignable_count),
        "average_group_size": round(assigned / len(per_group), 2) if per_group else 0.0,
        "average_score": round(sum(s["aggregate_score"] for s in scored) / len(scored), 6) if scored else 0.0,
        "min_score": min((s["min_score"] for s in scored), default=0.0),
    }
