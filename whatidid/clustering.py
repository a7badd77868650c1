"""
Feature grouping for whatidid.

Groups per-PR features by project and merges near-duplicates with
single-linkage agglomerative clustering over title similarity.
"""

from __future__ import annotations

import re
from collections import Counter

from Levenshtein import distance

from .models import Confidence, Feature, ProjectSummary, parse_timestamp


DEFAULT_SIMILARITY_THRESHOLD = 0.5
TOKEN_WEIGHT = 0.6
EDIT_WEIGHT = 0.4
MIN_TOKEN_LENGTH = 3


def tokenize(text: str) -> set[str]:
    """Lower-cased words longer than two characters, punctuation stripped."""
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    return {w for w in words if len(w) >= MIN_TOKEN_LENGTH}


def token_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the two titles' token sets (0 if either is empty)."""
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def levenshtein_similarity(a: str, b: str) -> float:
    """``1 - distance / max_len``, case-insensitive. Two empty strings score 1."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1 - distance(a.lower(), b.lower()) / max_len


def feature_similarity(f1: Feature, f2: Feature) -> float:
    """Weighted title similarity, forced to 0 across projects or types."""
    if f1.project != f2.project or f1.type is not f2.type:
        return 0.0
    return (
        token_similarity(f1.title, f2.title) * TOKEN_WEIGHT
        + levenshtein_similarity(f1.title, f2.title) * EDIT_WEIGHT
    )


def _pick_base(f1: Feature, f2: Feature) -> Feature:
    # medium/medium resolves to f2; every other tie to f1
    if f1.confidence is Confidence.HIGH or f2.confidence is Confidence.LOW:
        return f1
    return f2


def merge_features(f1: Feature, f2: Feature) -> Feature:
    """
    Combine two features into a new one.

    Scalar fields come from the more confident side, PR numbers are unioned,
    the date range widens, and confidence drops to medium on disagreement.
    """
    base = _pick_base(f1, f2)

    start = min(f1.start_date, f2.start_date, key=parse_timestamp)
    end = max(f1.end_date, f2.end_date, key=parse_timestamp)

    confidence = base.confidence
    if f1.confidence is not f2.confidence:
        confidence = Confidence.MEDIUM

    return Feature(
        project=base.project,
        title=base.title,
        description=base.description,
        type=base.type,
        prs=f1.prs + f2.prs,
        start_date=start,
        end_date=end,
        confidence=confidence,
    )


def group_by_project(features: list[Feature]) -> dict[str, list[Feature]]:
    groups: dict[str, list[Feature]] = {}
    for feature in features:
        groups.setdefault(feature.project, []).append(feature)
    return groups


def merge_similar_features(
    features: list[Feature],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> list[Feature]:
    """
    Single-linkage merge within one project.

    Takes the first remaining feature as a pivot and absorbs every later
    feature whose similarity to the (growing) pivot reaches ``threshold``.
    O(n^2); per-project feature counts are small.
    """
    if len(features) <= 1:
        return list(features)

    remaining = list(features)
    merged = []
    while remaining:
        current = remaining.pop(0)
        i = 0
        while i < len(remaining):
            if feature_similarity(current, remaining[i]) >= threshold:
                current = merge_features(current, remaining.pop(i))
            else:
                i += 1
        merged.append(current)
    return merged


def group_features(
    features: list[Feature],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> list[ProjectSummary]:
    """Build one ProjectSummary per project, ordered by start date."""
    summaries = []

    for project, project_features in group_by_project(features).items():
        merged = merge_similar_features(project_features, threshold)
        merged.sort(key=lambda f: parse_timestamp(f.end_date))

        start = min((f.start_date for f in merged), key=parse_timestamp)
        end = max((f.end_date for f in merged), key=parse_timestamp)
        all_prs = {number for f in merged for number in f.prs}

        summaries.append(ProjectSummary(
            repo_name=project.split("/")[-1],
            repo_full_name=project,
            features=merged,
            start_date=start,
            end_date=end,
            total_prs=len(all_prs),
        ))

    summaries.sort(key=lambda s: parse_timestamp(s.start_date))
    return summaries


def calculate_stats(summaries: list[ProjectSummary]) -> dict[str, object]:
    """Totals across all projects."""
    by_type: Counter[str] = Counter()
    total_features = 0
    total_prs = 0

    for summary in summaries:
        total_prs += summary.total_prs
        total_features += len(summary.features)
        by_type.update(f.type.value for f in summary.features)

    return {
        "total_prs": total_prs,
        "total_features": total_features,
        "features_by_type": dict(by_type),
    }
