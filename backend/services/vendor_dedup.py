"""
Name-based vendor deduplication used by the discovery pipeline.

Two layers:
- an exclusion list sent to the provider as a hint (bounded in size)
- a safety-net classification of whatever the provider actually returned
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from models.vendor import DiscoveredVendor

MAX_EXCLUDE_NAMES = 200


def normalize_vendor_name(name: Optional[str]) -> str:
    """Lower-cased, trimmed vendor name used for every comparison."""
    return (name or "").strip().lower()


def build_exclusion_list(
    staged_names: Iterable[str],
    onboarded_names: Iterable[str],
    cap: int = MAX_EXCLUDE_NAMES,
) -> List[str]:
    """
    Unique normalized names, the job's own staged names first, then
    onboarded vendor names until `cap` is reached.
    """
    seen: Dict[str, None] = {}
    for source in (staged_names, onboarded_names):
        for raw in source:
            if len(seen) >= cap:
                return list(seen)
            name = normalize_vendor_name(raw)
            if name:
                seen.setdefault(name, None)
    return list(seen)


@dataclass
class CandidateDecision:
    candidate: DiscoveredVendor
    normalized_name: str
    action: str  # "skip", "duplicate" or "stage"
    matched_id: Optional[str] = None


@dataclass
class Classification:
    decisions: List[CandidateDecision] = field(default_factory=list)
    over_limit: int = 0

    @property
    def to_stage(self) -> List[CandidateDecision]:
        return [d for d in self.decisions if d.action != "skip"]

    @property
    def skipped_same_job(self) -> int:
        return sum(1 for d in self.decisions if d.action == "skip")

    @property
    def onboarded_duplicates(self) -> int:
        return sum(1 for d in self.decisions if d.action == "duplicate")

    @property
    def duplicates_found(self) -> int:
        return self.skipped_same_job + self.onboarded_duplicates


def classify_candidates(
    candidates: Iterable[DiscoveredVendor],
    staged_by_name: Dict[str, str],
    onboarded_by_name: Dict[str, str],
    limit: Optional[int] = None,
) -> Classification:
    """
    Decide what happens to each provider candidate.

    - name already staged for this job (or repeated earlier in the same
      response) -> skip
    - name matches an onboarded vendor -> stage as duplicate of that vendor
    - otherwise -> stage

    With `limit`, at most that many candidates are staged. Later new names
    are counted in `over_limit` and left for a future run.
    """
    seen = dict(staged_by_name)
    result = Classification()

    for candidate in candidates:
        name = normalize_vendor_name(candidate.name)
        if not name:
            continue

        if name in seen:
            result.decisions.append(
                CandidateDecision(candidate, name, "skip", seen[name] or None)
            )
            continue

        if limit is not None and len(result.to_stage) >= limit:
            result.over_limit += 1
            continue

        onboarded_id = onboarded_by_name.get(name)
        action = "duplicate" if onboarded_id else "stage"
        result.decisions.append(CandidateDecision(candidate, name, action, onboarded_id))
        seen[name] = ""

    return result
