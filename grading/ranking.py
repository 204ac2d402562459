"""
Class and subject rankings.

Rankings use standard competition ranking: equal averages share a rank and the
next lower average takes its position in the sorted list (90, 85, 85, 70 rank
1, 2, 2, 4). Students without a result for the scope are left out.
"""
from .results import Ranking, RankingEntry


def rank(results, scope):
    """
    Rank the results that belong to scope.

    Args:
        results: iterable of CalculationResult (None entries are ignored)
        scope: RankingScope the ranking is built for

    Returns:
        list of RankingEntry, best average first
    """
    candidates = [
        result for result in results
        if result is not None and result.key == scope.result_key(result.student_id)
    ]
    # Highest average first; student id keeps ties in a stable order
    candidates.sort(key=lambda r: (-r.average_value, str(r.student_id)))

    entries = []
    position = 0
    last_value = None
    for i, result in enumerate(candidates, 1):
        if result.average_value != last_value:
            position = i
        entries.append(RankingEntry(
            student_id=result.student_id,
            average_value=result.average_value,
            rank=position,
        ))
        last_value = result.average_value
    return entries


def build_ranking(results, scope):
    return Ranking(scope=scope, entries=tuple(rank(results, scope)))
