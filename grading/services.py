"""
Recalculation orchestrator.

GradeCalculationService owns every write to the result store. A grade change
recomputes its chain bottom-up (monthly, subject semester, overall semester,
then the annual levels) under the student's lock and finishes by rebuilding the
affected rankings. Reads go through the same code path: a missing or stale
result is recomputed on demand, so the store is never the source of truth.
"""
import hashlib
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from django.core.exceptions import ValidationError

from . import calculations, config
from .accessors import ModelGradeAccessor
from .cascade import CascadePlan
from .configuration import ConfigurationResolver
from .exceptions import (
    AmbiguousClassError, GradingError, MissingDependencyError, StaleConfigError, StaleResultError
)
from .ranking import build_ranking
from .results import (
    SEMESTER_EXAM, SEMESTERS, BatchResult, CalculationDetails, CalculationKind,
    CalculationResult, ChainFailure, GradeComponent, RankingScope, ResultKey, monthly_slot
)
from .signals import average_calculated, rankings_rebuilt
from .store import ResultStore

logger = logging.getLogger(__name__)


def _combined_version(versions):
    """Fingerprint of the config versions an aggregate was computed from."""
    payload = '|'.join(sorted(versions))
    return hashlib.sha1(payload.encode('utf-8')).hexdigest()[:12]


def _mean_formula(values):
    """Human-readable mean, e.g. (80.00 + 70.00) / 2."""
    if not values:
        return ''
    terms = ' + '.join(str(calculations.round_half_up(v)) for v in values)
    return f'({terms}) / {len(values)}'


class GradeCalculationService:
    """
    Keeps the derived averages and rankings consistent with the raw grades.

    Args:
        accessor: GradeAccessor reading raw grades (ORM by default)
        resolver: ConfigurationResolver for assessment configs
        store: ResultStore holding results and rankings
        max_workers: threads used by class recalculations
            (defaults to GRADING_BATCH_MAX_WORKERS)
    """

    def __init__(self, accessor=None, resolver=None, store=None, max_workers=None):
        self.accessor = accessor if accessor is not None else ModelGradeAccessor()
        self.resolver = resolver if resolver is not None else ConfigurationResolver()
        self.store = store if store is not None else ResultStore()
        self.max_workers = max_workers
        self._handlers = {
            CalculationKind.MONTHLY: self._compute_monthly,
            CalculationKind.SUBJECT_SEMESTER: self._compute_subject_semester,
            CalculationKind.OVERALL_SEMESTER: self._compute_overall_semester,
            CalculationKind.SUBJECT_ANNUAL: self._compute_subject_annual,
            CalculationKind.OVERALL_ANNUAL: self._compute_overall_annual,
        }

    def _bound(self, accessor, resolver):
        """Same store, different data sources (used for batch workers)."""
        return GradeCalculationService(accessor=accessor, resolver=resolver, store=self.store, max_workers=1)

    # ============ Computation ============

    def _compute(self, key, class_id):
        return self._handlers[key.kind](key, class_id)

    def _result(self, key, class_id, value, version, depends_on=(), input_version='', details=None):
        if value is None:
            return None
        return CalculationResult(
            key=key,
            class_id=class_id,
            average_value=calculations.round_half_up(value),
            config_version=version,
            depends_on=tuple(depends_on),
            input_version=input_version,
            details=details,
        )

    def _config_for(self, key, class_id):
        return self.resolver.resolve(class_id, key.subject_id, key.semester, key.academic_year)

    def _scores_for(self, key, class_id):
        return self.accessor.subject_scores(
            key.student_id, key.subject_id, key.semester, key.academic_year, class_id
        )

    def _input_version(self, key, class_id):
        """Digest of the raw grades a result of this key is computed from."""
        if key.kind is CalculationKind.MONTHLY:
            return self._scores_for(key, class_id).fingerprint(with_exam=False)
        if key.kind is CalculationKind.SUBJECT_SEMESTER:
            return self._scores_for(key, class_id).fingerprint(with_exam=True)
        if key.kind is CalculationKind.OVERALL_SEMESTER:
            return self.accessor.semester_fingerprint(key.student_id, key.semester, key.academic_year, class_id)
        # Annual results only read semester results, which carry their own digests
        return ''

    def _compute_monthly(self, key, class_id):
        assessment = self._config_for(key, class_id)
        scores = self._scores_for(key, class_id)
        items = scores.monthly_items(assessment.monthly_exam_count)
        value = calculations.monthly_average([score for _, score in items])
        details = CalculationDetails(
            components=tuple(GradeComponent(monthly_slot(number), score) for number, score in items),
            monthly_average=calculations.round_half_up(value),
            formula=_mean_formula([score for _, score in items]),
        )
        return self._result(
            key, class_id, value, assessment.version,
            input_version=scores.fingerprint(with_exam=False),
            details=details,
        )

    def _compute_subject_semester(self, key, class_id):
        assessment = self._config_for(key, class_id)
        monthly_key = ResultKey.monthly(key.student_id, key.subject_id, key.semester, key.academic_year)
        monthly = self._current(monthly_key, class_id)
        scores = self._scores_for(key, class_id)
        monthly_value = monthly.average_value if monthly is not None else None
        value = calculations.subject_semester_average(
            monthly_value,
            scores.semester_exam,
            assessment.monthly_weight,
            assessment.semester_weight,
        )

        details = None
        if value is not None:
            exam = calculations.round_half_up(scores.semester_exam)
            monthly_weight = calculations.round_half_up(assessment.monthly_weight)
            semester_weight = calculations.round_half_up(assessment.semester_weight)
            details = CalculationDetails(
                components=monthly.details.components if monthly.details is not None else (),
                semester_exam=GradeComponent(SEMESTER_EXAM, exam),
                monthly_weight=monthly_weight,
                semester_weight=semester_weight,
                monthly_average=monthly_value,
                weighted_monthly=calculations.round_half_up(calculations.weighted(monthly_value, monthly_weight)),
                weighted_semester=calculations.round_half_up(calculations.weighted(exam, semester_weight)),
                formula=f'({monthly_value} × {monthly_weight}%) + ({exam} × {semester_weight}%)',
            )
        return self._result(
            key, class_id, value, assessment.version,
            depends_on=(monthly_key,),
            input_version=scores.fingerprint(with_exam=True),
            details=details,
        )

    def _compute_overall_semester(self, key, class_id):
        subjects = self.accessor.subjects_for_student(key.student_id, key.semester, key.academic_year, class_id)
        defined = []
        for subject_id in subjects:
            subject_key = ResultKey.subject_semester(key.student_id, subject_id, key.semester, key.academic_year)
            result = self._current(subject_key, class_id)
            if result is not None:
                defined.append(result)

        values = [r.average_value for r in defined]
        value = calculations.overall_semester_average(values)
        return self._result(
            key, class_id, value,
            _combined_version(r.config_version for r in defined),
            depends_on=[r.key for r in defined],
            input_version=self._input_version(key, class_id),
            details=CalculationDetails(
                components=tuple(GradeComponent(str(r.subject_id), r.average_value) for r in defined),
                formula=_mean_formula(values),
            ),
        )

    def _semester_class(self, student_id, semester, academic_year, class_id):
        """Class the student took a given semester in; falls back to class_id."""
        classes = self.accessor.classes_for_student(student_id, academic_year, semester)
        return classes[0] if len(classes) == 1 else class_id

    def _annual(self, key, class_id, semester_keys, average):
        halves = [
            self._current(
                semester_key,
                self._semester_class(key.student_id, semester_key.semester, key.academic_year, class_id)
            )
            for semester_key in semester_keys
        ]
        if any(half is None for half in halves):
            return None
        values = [half.average_value for half in halves]
        return self._result(
            key, class_id, average(*values),
            _combined_version(half.config_version for half in halves),
            depends_on=semester_keys,
            details=CalculationDetails(
                components=tuple(
                    GradeComponent(f'SEMESTER_{half.semester}', half.average_value) for half in halves
                ),
                formula=_mean_formula(values),
            ),
        )

    def _compute_subject_annual(self, key, class_id):
        semester_keys = [
            ResultKey.subject_semester(key.student_id, key.subject_id, semester, key.academic_year)
            for semester in SEMESTERS
        ]
        return self._annual(key, class_id, semester_keys, calculations.subject_annual_average)

    def _compute_overall_annual(self, key, class_id):
        semester_keys = [
            ResultKey.overall_semester(key.student_id, semester, key.academic_year)
            for semester in SEMESTERS
        ]
        return self._annual(key, class_id, semester_keys, calculations.overall_annual_average)

    # ============ Read-through ============

    def _check_current(self, result):
        """
        Raise StaleResultError if result no longer reflects its inputs: the
        assessment config, the raw grades, or a dependency recomputed since.
        """
        key = result.key
        if key.kind in (CalculationKind.MONTHLY, CalculationKind.SUBJECT_SEMESTER):
            current_version = self._config_for(key, result.class_id).version
            if current_version != result.config_version:
                raise StaleConfigError(key, result.config_version, current_version)

        if self._input_version(key, result.class_id) != result.input_version:
            raise StaleResultError(key, 'its grades changed since it was computed')

        for dependency_key in result.depends_on:
            dependency = self.store.get(dependency_key)
            if dependency is None:
                raise StaleResultError(key, f'{dependency_key} is no longer stored')
            if dependency.computed_at > result.computed_at:
                raise StaleResultError(key, f'{dependency_key} was recomputed after it')
            self._check_current(dependency)

    def _current(self, key, class_id):
        """Stored result for key if still valid, otherwise a freshly computed one."""
        with self.store.lock(key.student_id, key.academic_year):
            stored = self.store.get(key)
            if stored is not None:
                if class_id is None:
                    class_id = stored.class_id
                try:
                    if stored.class_id != class_id:
                        raise StaleResultError(key, f'computed for class {stored.class_id}, read for {class_id}')
                    self._check_current(stored)
                    return stored
                except StaleResultError as e:
                    logger.debug(f"Recomputing {e}")

            result = self._compute(key, class_id)
            if result is None:
                if stored is not None:
                    self.store.invalidate(key)
            else:
                self.store.put(key, result)
            return result

    def _class_for(self, key, class_id):
        """
        Class a read is answered for. Results are keyed without a class, so a
        student with grades in several classes for the same period must be read
        with an explicit class_id. Annual reads use the latest semester's class.
        """
        if class_id is not None:
            return class_id
        semesters = [key.semester] if key.semester is not None else sorted(SEMESTERS, reverse=True)
        for semester in semesters:
            classes = self.accessor.classes_for_student(key.student_id, key.academic_year, semester)
            if len(classes) > 1:
                raise AmbiguousClassError(
                    f"Student {key.student_id} has grades in {len(classes)} classes for semester "
                    f"{semester} of {key.academic_year}; pass class_id"
                )
            if classes:
                return classes[0]
        return None

    def get_result(self, key, class_id=None):
        """Current CalculationResult for key, or None while it is undefined."""
        return self._current(key, self._class_for(key, class_id))

    def monthly_average(self, student_id, subject_id, semester, academic_year, class_id=None):
        return self.get_result(ResultKey.monthly(student_id, subject_id, semester, academic_year), class_id)

    def subject_semester_average(self, student_id, subject_id, semester, academic_year, class_id=None):
        return self.get_result(ResultKey.subject_semester(student_id, subject_id, semester, academic_year), class_id)

    def overall_semester_average(self, student_id, semester, academic_year, class_id=None):
        return self.get_result(ResultKey.overall_semester(student_id, semester, academic_year), class_id)

    def subject_annual_average(self, student_id, subject_id, academic_year, class_id=None):
        return self.get_result(ResultKey.subject_annual(student_id, subject_id, academic_year), class_id)

    def overall_annual_average(self, student_id, academic_year, class_id=None):
        return self.get_result(ResultKey.overall_annual(student_id, academic_year), class_id)

    # ============ Cascades ============

    def _run_chain(self, student_id, class_id, academic_year, seeds, strict=True):
        """
        Invalidate and recompute every node upward of seeds, in dependency order.

        With strict=False a failing node is recorded and everything depending on
        it is skipped; the rest of the chain still runs.

        Returns:
            (results, failures)
        """
        plan = CascadePlan(seeds)
        results = []
        failures = []
        blocked = set()

        with self.store.lock(student_id, academic_year):
            for key in plan:
                self.store.invalidate(key)

            for key in plan:
                if key in blocked:
                    continue
                try:
                    result = self._compute(key, class_id)
                except (ValidationError, GradingError) as e:
                    if strict:
                        raise
                    logger.warning(f"Recalculation of {key} failed: {e}")
                    failures.append(ChainFailure(student_id, key.subject_id, e))
                    blocked |= plan.downstream(key)
                    continue
                if result is not None:
                    self.store.put(key, result)
                    results.append(result)

        for result in results:
            average_calculated.send(sender=self.__class__, result=result)
        return results, failures

    def _affected_scopes(self, class_id, academic_year, pairs):
        """Rankings touched by a set of (semester, subject_id) changes."""
        scopes = set()
        for semester, subject_id in pairs:
            scopes.update([
                RankingScope(class_id, academic_year, None, semester),
                RankingScope(class_id, academic_year, subject_id, semester),
                RankingScope(class_id, academic_year, subject_id, None),
                RankingScope(class_id, academic_year, None, None),
            ])
        return sorted(scopes, key=lambda s: (s.kind.level, s.semester or 0, str(s.subject_id)))

    def on_grade_changed(self, student_id, subject_id, class_id, semester, academic_year, removed=False):
        """
        Bring every average derived from one (student, subject, semester) grade
        set up to date, then rebuild the rankings they feed.

        removed is set when the grade was deleted: the student may then have no
        grades left in class_id, and the results computed there are cleared.

        Raises:
            ValidationError: a stored score or the resolved config is invalid
            MissingDependencyError: the student's grades for the year belong to another class
        """
        classes = self.accessor.classes_for_student(student_id, academic_year)
        if not removed and classes and class_id not in classes:
            raise MissingDependencyError(
                f"Student {student_id} has no grades in class {class_id} for {academic_year}"
            )

        logger.info(
            f"Recalculating averages for student {student_id}, subject {subject_id}, "
            f"semester {semester} ({academic_year})"
        )
        scopes = self._affected_scopes(class_id, academic_year, [(semester, subject_id)])
        seeds = [ResultKey.monthly(student_id, subject_id, semester, academic_year)]
        try:
            results, _ = self._run_chain(student_id, class_id, academic_year, seeds, strict=True)
        except (ValidationError, GradingError):
            # Drop rankings that may now be out of date; they rebuild on next read
            for scope in scopes:
                self.store.invalidate_ranking(scope)
            raise

        for scope in scopes:
            self.rebuild_rankings(scope)
        return results

    recalculate_on_grade_change = on_grade_changed

    def calculate_class_averages(self, class_id, semester, academic_year):
        """
        Recalculate every student chain of a class for one semester.

        A failing chain is recorded in the returned BatchResult and never stops
        the other students. Rankings are rebuilt once, after all chains.
        """
        return self._run_batch(class_id, academic_year, semester=semester)

    def on_config_changed(self, academic_year, class_id=None, subject_id=None, semester=None):
        """
        Recompute everything computed under the assessment config of a scope.
        None widens the scope (all classes, subjects or semesters).

        Returns:
            list of BatchResult, one per affected class
        """
        scopes = self.accessor.scopes(academic_year, class_id, subject_id, semester)
        classes = sorted({scope[0] for scope in scopes}, key=str)
        logger.info(
            f"Assessment config changed for {academic_year} "
            f"(class={class_id}, subject={subject_id}, semester={semester}): "
            f"{len(classes)} class(es) to recalculate"
        )
        return [
            self._run_batch(affected_class, academic_year, semester=semester, subject_id=subject_id)
            for affected_class in classes
        ]

    def _run_batch(self, class_id, academic_year, semester=None, subject_id=None):
        # Phase 1: prefetch grades and configs so workers never hit the database
        snapshot = self.accessor.snapshot(academic_year, class_id=class_id)
        resolver = self.resolver.preload(
            (class_id, subject, sem, academic_year)
            for _, subject, sem in snapshot.scopes(academic_year, class_id=class_id)
        )
        worker = self._bound(snapshot, resolver)
        chains = snapshot.chains(class_id, academic_year, semester=semester, subject_id=subject_id)

        batch = BatchResult(class_id=class_id, semester=semester, academic_year=academic_year)
        if not chains:
            logger.info(f"No grades to recalculate for class {class_id} ({academic_year})")
            return batch

        # Phase 2: one chain per student
        def run(item):
            student_id, pairs = item
            seeds = [ResultKey.monthly(student_id, subject, sem, academic_year) for sem, subject in pairs]
            try:
                return student_id, worker._run_chain(student_id, class_id, academic_year, seeds, strict=False)
            except Exception as e:
                logger.exception(f"Unexpected error recalculating student {student_id}: {e}")
                return student_id, ([], [ChainFailure(student_id, None, e)])

        max_workers = self.max_workers or config.BATCH_MAX_WORKERS
        if max_workers > 1 and len(chains) > 1:
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='grading') as executor:
                outcomes = list(executor.map(run, chains.items()))
        else:
            outcomes = [run(item) for item in chains.items()]

        touched = set()
        for (student_id, (results, failures)), pairs in zip(outcomes, chains.values()):
            batch.results.extend(results)
            touched.update(pairs)
            if failures:
                batch.failures.extend(failures)
            else:
                batch.successes.append(student_id)

        # Phase 3: rankings, once per affected scope
        for scope in self._affected_scopes(class_id, academic_year, sorted(touched, key=lambda p: (p[0], str(p[1])))):
            batch.rankings.append(worker.rebuild_rankings(scope))

        logger.info(
            f"Recalculated class {class_id} ({academic_year}, semester {semester}): "
            f"{len(batch.successes)} succeeded, {len(batch.failures)} failed"
        )
        return batch

    # ============ Rankings ============

    def rebuild_rankings(self, scope):
        """Rank every student of the scope's class on their current result."""
        results = []
        for student_id in self.accessor.students_in_class(scope.class_id, scope.academic_year, scope.semester):
            try:
                results.append(self._current(scope.result_key(student_id), scope.class_id))
            except (ValidationError, GradingError) as e:
                logger.warning(f"Leaving student {student_id} out of {scope.cache_key}: {e}")

        ranking = build_ranking(results, scope)
        self.store.put_ranking(scope, ranking)
        rankings_rebuilt.send(sender=self.__class__, ranking=ranking)
        return ranking

    def get_ranking(self, scope):
        ranking = self.store.get_ranking(scope)
        if ranking is None:
            ranking = self.rebuild_rankings(scope)
        return ranking

    def class_rankings(self, class_id, academic_year, semester=None):
        """Overall ranking of a class for a semester, or the year when semester is None."""
        return self.get_ranking(RankingScope(class_id, academic_year, None, semester))

    def subject_rankings(self, class_id, subject_id, academic_year, semester=None):
        return self.get_ranking(RankingScope(class_id, academic_year, subject_id, semester))


_service = None
_service_lock = threading.Lock()


def get_service():
    """Process-wide GradeCalculationService used by signal handlers and tasks."""
    global _service
    with _service_lock:
        if _service is None:
            _service = GradeCalculationService()
        return _service


def reset_service():
    """Drop the shared service so the next get_service() builds a fresh one."""
    global _service
    with _service_lock:
        _service = None
