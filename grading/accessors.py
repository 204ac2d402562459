"""
Read-only access to raw grades.

The engine never writes grades. ModelGradeAccessor reads them from the Grade
table; GradeSnapshot holds a prefetched list so batch workers can run without
touching the database.
"""
import hashlib
from collections import defaultdict
from dataclasses import dataclass, field

from .calculations import round_half_up
from .results import SEMESTER_EXAM, monthly_slot


def fingerprint(items):
    """Order-independent digest of (name, score) pairs."""
    payload = '|'.join(sorted(f'{name}={round_half_up(score)}' for name, score in items))
    return hashlib.sha1(payload.encode('utf-8')).hexdigest()[:12]


@dataclass
class SubjectScores:
    """Raw scores of one student in one subject for one semester."""
    class_id: object = None
    monthly: dict = field(default_factory=dict)  # {exam number: score}
    semester_exam: object = None

    def monthly_items(self, monthly_exam_count):
        """(exam number, score) pairs within the configured exam count, in exam order."""
        return [
            (number, score) for number, score in sorted(self.monthly.items())
            if number <= monthly_exam_count
        ]

    def monthly_scores(self, monthly_exam_count):
        """Entered monthly scores within the configured exam count, in exam order."""
        return [score for _, score in self.monthly_items(monthly_exam_count)]

    def fingerprint(self, with_exam=True):
        items = [(monthly_slot(number), score) for number, score in self.monthly.items()]
        if with_exam and self.semester_exam is not None:
            items.append((SEMESTER_EXAM, self.semester_exam))
        return fingerprint(items)

    @property
    def is_empty(self):
        return not self.monthly and self.semester_exam is None


class GradeAccessor:
    """Queries over GradeEntry rows. Subclasses implement entries()."""

    def entries(self, **filters):
        """Return GradeEntry objects whose attributes equal the given filters."""
        raise NotImplementedError

    def subject_scores(self, student_id, subject_id, semester, academic_year, class_id=None):
        filters = dict(
            student_id=student_id,
            subject_id=subject_id,
            semester=semester,
            academic_year=academic_year
        )
        if class_id is not None:
            filters['class_id'] = class_id

        scores = SubjectScores(class_id=class_id)
        for entry in self.entries(**filters):
            scores.class_id = entry.class_id
            if entry.is_semester_exam:
                scores.semester_exam = entry.score
            elif entry.monthly_index is not None:
                scores.monthly[entry.monthly_index] = entry.score
        return scores

    def subjects_for_student(self, student_id, semester, academic_year, class_id=None):
        filters = dict(student_id=student_id, semester=semester, academic_year=academic_year)
        if class_id is not None:
            filters['class_id'] = class_id
        return sorted({e.subject_id for e in self.entries(**filters)}, key=str)

    def students_in_class(self, class_id, academic_year, semester=None):
        filters = dict(class_id=class_id, academic_year=academic_year)
        if semester is not None:
            filters['semester'] = semester
        return sorted({e.student_id for e in self.entries(**filters)}, key=str)

    def classes_for_student(self, student_id, academic_year, semester=None):
        filters = dict(student_id=student_id, academic_year=academic_year)
        if semester is not None:
            filters['semester'] = semester
        return sorted({e.class_id for e in self.entries(**filters)}, key=str)

    def semester_fingerprint(self, student_id, semester, academic_year, class_id=None):
        """Digest of every grade of a student for one semester (all subjects)."""
        filters = dict(student_id=student_id, semester=semester, academic_year=academic_year)
        if class_id is not None:
            filters['class_id'] = class_id
        return fingerprint((f'{e.subject_id}:{e.slot}', e.score) for e in self.entries(**filters))

    def snapshot(self, academic_year, class_id=None):
        """Prefetch every grade of the year (optionally one class) into a GradeSnapshot."""
        filters = dict(academic_year=academic_year)
        if class_id is not None:
            filters['class_id'] = class_id
        return GradeSnapshot(self.entries(**filters))

    def chains(self, class_id, academic_year, semester=None, subject_id=None):
        """
        Map each student of the class to the (semester, subject) pairs they
        have grades for: {student_id: [(semester, subject_id), ...]}.
        """
        filters = dict(class_id=class_id, academic_year=academic_year)
        if semester is not None:
            filters['semester'] = semester
        if subject_id is not None:
            filters['subject_id'] = subject_id

        pairs = defaultdict(set)
        for entry in self.entries(**filters):
            pairs[entry.student_id].add((entry.semester, entry.subject_id))
        return {
            student_id: sorted(student_pairs, key=lambda p: (p[0], str(p[1])))
            for student_id, student_pairs in sorted(pairs.items(), key=lambda item: str(item[0]))
        }

    def scopes(self, academic_year, class_id=None, subject_id=None, semester=None):
        """Distinct (class_id, subject_id, semester) tuples with grades in the year."""
        filters = dict(academic_year=academic_year)
        if class_id is not None:
            filters['class_id'] = class_id
        if subject_id is not None:
            filters['subject_id'] = subject_id
        if semester is not None:
            filters['semester'] = semester
        return sorted(
            {(e.class_id, e.subject_id, e.semester) for e in self.entries(**filters)},
            key=lambda s: (str(s[0]), str(s[1]), s[2])
        )


class ModelGradeAccessor(GradeAccessor):
    """Reads grades from the Grade table."""

    def entries(self, **filters):
        from .models import Grade
        return [grade.to_entry() for grade in Grade.objects.filter(**filters)]


class GradeSnapshot(GradeAccessor):
    """In-memory accessor over a fixed list of GradeEntry objects."""

    def __init__(self, entries):
        self._by_student = defaultdict(list)
        self._all = []
        for entry in entries:
            self._by_student[entry.student_id].append(entry)
            self._all.append(entry)

    def entries(self, **filters):
        if 'student_id' in filters:
            candidates = self._by_student.get(filters['student_id'], [])
        else:
            candidates = self._all
        return [
            entry for entry in candidates
            if all(getattr(entry, name) == value for name, value in filters.items())
        ]
