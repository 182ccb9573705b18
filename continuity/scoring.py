# continuity/scoring.py
"""Weighted, length-normalized consistency scoring."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from config import settings
from models.consistency_models import ConsistencyIssue, IssueType, Severity

CATEGORY_WEIGHTS: dict[IssueType, float] = {
    IssueType.TIMELINE: 1.5,
    IssueType.CHARACTER: 1.3,
    IssueType.PLOT: 1.2,
    IssueType.RESEARCH: 1.0,
    IssueType.WORLDBUILDING: 0.8,
    IssueType.RELATIONSHIP: 0.6,
}

SEVERITY_POINTS: dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.MAJOR: 15,
    Severity.MINOR: 5,
}

CHECKED_CATEGORIES: tuple[IssueType, ...] = (
    IssueType.CHARACTER,
    IssueType.TIMELINE,
    IssueType.WORLDBUILDING,
    IssueType.RESEARCH,
)


def issue_deduction(issue: ConsistencyIssue) -> float:
    return CATEGORY_WEIGHTS[issue.type] * SEVERITY_POINTS[issue.severity]


def length_normalization(content_length: int) -> float:
    """Longer content tolerates proportionally more incidental issues."""
    return max(1.0, content_length / settings.CONTINUITY_LENGTH_NORMALIZATION_CHARS)


def calculate_score(issues: Iterable[ConsistencyIssue], content_length: int) -> float:
    deduction = sum(issue_deduction(issue) for issue in issues)
    score = 100.0 - deduction / length_normalization(content_length)
    return round(min(100.0, max(0.0, score)), 2)


def calculate_category_scores(
    issues: list[ConsistencyIssue], content_length: int
) -> dict[str, float]:
    """Score every checked category plus any other category with issues."""
    categories = list(CHECKED_CATEGORIES)
    categories.extend(
        issue.type for issue in issues if issue.type not in categories
    )
    return {
        category.value: calculate_score(
            (issue for issue in issues if issue.type is category), content_length
        )
        for category in categories
    }


def generate_recommendations(issues: list[ConsistencyIssue]) -> list[str]:
    if not issues:
        return ["Excellent consistency! No issues found in this chapter."]

    recommendations: list[str] = []
    severity_counts = Counter(issue.severity for issue in issues)
    type_counts = Counter(issue.type for issue in issues)

    if severity_counts[Severity.CRITICAL]:
        recommendations.append(
            f"Address {severity_counts[Severity.CRITICAL]} critical consistency "
            "issue(s) before continuing."
        )
    if severity_counts[Severity.MAJOR]:
        recommendations.append(
            f"Review {severity_counts[Severity.MAJOR]} major issue(s) that may "
            "confuse readers."
        )
    if type_counts[IssueType.CHARACTER]:
        recommendations.append(
            "Review character states and motivations for consistency."
        )
    if type_counts[IssueType.TIMELINE]:
        recommendations.append("Clarify the passage of time and event sequencing.")
    if type_counts[IssueType.WORLDBUILDING]:
        recommendations.append("Check world rules against established elements.")
    if type_counts[IssueType.RESEARCH]:
        recommendations.append("Verify technical and research details.")
    if severity_counts[Severity.MINOR] >= 3:
        recommendations.append("Several minor issues found; consider a polish pass.")
    return recommendations


def identify_successful_elements(
    issues: list[ConsistencyIssue], tracked_characters: int
) -> list[str]:
    present = {issue.type for issue in issues}
    successes: list[str] = []
    if IssueType.CHARACTER not in present and tracked_characters:
        successes.append("Character consistency maintained")
    if IssueType.TIMELINE not in present:
        successes.append("Timeline progression is coherent")
    if IssueType.WORLDBUILDING not in present:
        successes.append("World-building elements are consistent")
    if IssueType.RESEARCH not in present:
        successes.append("Research facts are used consistently")
    return successes
