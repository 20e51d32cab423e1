"""Result similarity and collaboration convergence detection."""

from typing import Any

from .strategies import CollaborationConsensus, Contribution, ConvergenceCheck
from .task import result_field

NEUTRAL_SIMILARITY = 0.5
CONFIDENCE_MATCH_SIMILARITY = 0.9
CONFIDENCE_TOLERANCE = 0.1


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance (single-character insert/delete/substitute)."""
    rows = len(b) + 1
    cols = len(a) + 1
    table = [[0] * cols for _ in range(rows)]

    for i in range(cols):
        table[0][i] = i
    for j in range(rows):
        table[j][0] = j

    for j in range(1, rows):
        for i in range(1, cols):
            if a[i - 1] == b[j - 1]:
                table[j][i] = table[j - 1][i - 1]
            else:
                table[j][i] = 1 + min(
                    table[j - 1][i - 1],  # substitution
                    table[j][i - 1],  # insertion
                    table[j - 1][i],  # deletion
                )

    return table[-1][-1]


def string_similarity(a: str, b: str) -> float:
    """Normalized edit-distance score in [0, 1]."""
    if a == b:
        return 1.0
    longer = a if len(a) >= len(b) else b
    if not longer:
        return 1.0
    return (len(longer) - edit_distance(a, b)) / len(longer)


def similarity(a: Any, b: Any) -> float:
    """Similarity of two worker results.

    Confidence scores win when both results carry one; otherwise textual
    outputs are compared by edit distance. Anything else is neutral.
    A missing result never counts as similar.
    """
    if a is None or b is None:
        return 0.0

    confidence_a = result_field(a, "confidence")
    confidence_b = result_field(b, "confidence")
    if confidence_a is not None and confidence_b is not None:
        if abs(confidence_a - confidence_b) < CONFIDENCE_TOLERANCE:
            return CONFIDENCE_MATCH_SIMILARITY
        return NEUTRAL_SIMILARITY

    output_a = result_field(a, "output")
    output_b = result_field(b, "output")
    if isinstance(output_a, str) and isinstance(output_b, str):
        return string_similarity(output_a, output_b)

    return NEUTRAL_SIMILARITY


class ConvergenceDetector:
    """Decides whether a collaborative session has stabilized."""

    def __init__(self, stability_threshold: float = 0.9, convergence_ratio: float = 0.8):
        self.stability_threshold = stability_threshold
        self.convergence_ratio = convergence_ratio

    def check(self, contributions: list[Contribution], iteration: int) -> ConvergenceCheck:
        """Compare each worker's result in `iteration` with its own previous one."""
        if iteration < 2:
            return ConvergenceCheck(converged=False, reason="Need at least 2 iterations")

        current = [c for c in contributions if c.iteration == iteration]
        previous = {c.worker_id: c for c in contributions if c.iteration == iteration - 1}

        if not current or not previous:
            return ConvergenceCheck(converged=False, reason="Insufficient results for comparison")

        compared = 0
        stable = 0
        for contribution in current:
            earlier = previous.get(contribution.worker_id)
            if earlier is None:
                continue
            compared += 1
            if similarity(contribution.result, earlier.result) >= self.stability_threshold:
                stable += 1

        if compared == 0:
            return ConvergenceCheck(converged=False, reason="No worker contributed to both rounds")

        ratio = stable / compared
        converged = ratio >= self.convergence_ratio
        return ConvergenceCheck(
            converged=converged,
            reason="Results converged" if converged else "Results still changing",
            stability_ratio=ratio,
            stable_results=stable,
            compared=compared,
        )

    @staticmethod
    def build_consensus(contributions: list[Contribution]) -> CollaborationConsensus | None:
        """Summarize the latest round that produced any result."""
        if not contributions:
            return None

        latest_iteration = max(c.iteration for c in contributions)
        latest = [c for c in contributions if c.iteration == latest_iteration]

        confidences = [result_field(c.result, "confidence") for c in latest]
        confidences = [NEUTRAL_SIMILARITY if score is None else score for score in confidences]
        confidences = [score for score in confidences if score > 0]
        average = sum(confidences) / len(confidences) if confidences else NEUTRAL_SIMILARITY

        # max() keeps the first of equally confident results
        best = max(latest, key=lambda c: result_field(c.result, "confidence") or 0)

        return CollaborationConsensus(
            iteration=latest_iteration,
            participant_count=len(latest),
            average_confidence=average,
            highest_confidence_result=best,
            consensus_strength=average,
        )
