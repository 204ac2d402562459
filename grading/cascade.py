"""
Dependency graph of the averaging levels.

Nodes are ResultKeys. Edges point from a result to the results derived from it:

    MONTHLY -> SUBJECT_SEMESTER -> OVERALL_SEMESTER -> OVERALL_ANNUAL
    SUBJECT_SEMESTER -> SUBJECT_ANNUAL

A CascadePlan holds every node reachable upward from a set of changed nodes,
ordered by a topological walk so each node is recomputed after everything it
depends on.
"""
from graphlib import TopologicalSorter

from .results import CalculationKind, ResultKey


def _monthly_dependents(key):
    return (ResultKey.subject_semester(key.student_id, key.subject_id, key.semester, key.academic_year),)


def _subject_semester_dependents(key):
    return (
        ResultKey.overall_semester(key.student_id, key.semester, key.academic_year),
        ResultKey.subject_annual(key.student_id, key.subject_id, key.academic_year),
    )


def _overall_semester_dependents(key):
    return (ResultKey.overall_annual(key.student_id, key.academic_year),)


def _no_dependents(key):
    return ()


_DEPENDENTS = {
    CalculationKind.MONTHLY: _monthly_dependents,
    CalculationKind.SUBJECT_SEMESTER: _subject_semester_dependents,
    CalculationKind.OVERALL_SEMESTER: _overall_semester_dependents,
    CalculationKind.SUBJECT_ANNUAL: _no_dependents,
    CalculationKind.OVERALL_ANNUAL: _no_dependents,
}


def dependents(key):
    """Results computed directly from key."""
    return _DEPENDENTS[key.kind](key)


def _order_key(key):
    return (
        key.kind.level,
        key.kind.value,
        str(key.student_id),
        key.semester or 0,
        str(key.subject_id) if key.subject_id is not None else '',
    )


class CascadePlan:
    """Upward closure of the seed nodes, in recomputation order."""

    def __init__(self, seeds):
        self.predecessors = {}
        self.successors = {}
        pending = list(seeds)
        while pending:
            node = pending.pop()
            if node in self.successors:
                continue
            self.predecessors.setdefault(node, set())
            self.successors[node] = set(dependents(node))
            for dependent in self.successors[node]:
                self.predecessors.setdefault(dependent, set()).add(node)
                pending.append(dependent)

        sorter = TopologicalSorter(self.predecessors)
        sorter.prepare()
        order = []
        while sorter.is_active():
            # Sort each ready batch so the walk is deterministic
            ready = sorted(sorter.get_ready(), key=_order_key)
            order.extend(ready)
            sorter.done(*ready)
        self.order = tuple(order)

    def __iter__(self):
        return iter(self.order)

    def __len__(self):
        return len(self.order)

    def __contains__(self, key):
        return key in self.predecessors

    def downstream(self, key):
        """Every planned node that depends, directly or not, on key."""
        found = set()
        pending = list(self.successors.get(key, ()))
        while pending:
            node = pending.pop()
            if node in found:
                continue
            found.add(node)
            pending.extend(self.successors.get(node, ()))
        return found
