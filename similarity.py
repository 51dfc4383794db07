"""Edit-distance based string similarity."""

from __future__ import annotations


def levenshtein_distance(first: str, second: str) -> int:
    """Return the minimum number of single-character edits turning one string into the other."""
    rows = len(second) + 1
    cols = len(first) + 1
    matrix = [[0] * cols for _ in range(rows)]

    for col in range(cols):
        matrix[0][col] = col
    for row in range(rows):
        matrix[row][0] = row

    for row in range(1, rows):
        for col in range(1, cols):
            cost = 0 if first[col - 1] == second[row - 1] else 1
            matrix[row][col] = min(
                matrix[row][col - 1] + 1,
                matrix[row - 1][col] + 1,
                matrix[row - 1][col - 1] + cost,
            )

    return matrix[rows - 1][cols - 1]


def similarity(first: str, second: str) -> float:
    """Similarity in [0, 1]: 1 minus the edit distance over the longer length."""
    longest = max(len(first), len(second))
    if longest == 0:
        return 1.0
    if not first or not second:
        return 0.0
    return 1.0 - levenshtein_distance(first, second) / longest
