import uuid
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.cache import cache
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase, override_settings

from . import calculations, config
from .accessors import GradeSnapshot
from .cascade import CascadePlan
from .configuration import AssessmentConfig, ConfigurationResolver
from .exceptions import AmbiguousClassError, MissingDependencyError, PartialBatchFailure
from .models import Grade, TeacherAssessmentConfig, DefaultAssessmentConfig
from .ranking import build_ranking, rank
from .results import (
    SEMESTER_EXAM, CalculationKind, CalculationResult, GradeComponent, GradeEntry,
    RankingScope, ResultKey, monthly_slot
)
from .services import GradeCalculationService, get_service, reset_service
from .signals import average_calculated, signals_disabled
from .store import ResultStore
from .tasks import calculate_class_averages_task


YEAR = '2024-2025'


class BrokenCache:
    """Cache backend stand-in whose every call fails."""

    def get(self, *args, **kwargs):
        raise ConnectionError('cache unavailable')

    set = get
    delete = get


class CalculationTest(SimpleTestCase):
    """Tests for the pure average functions."""

    def test_monthly_average_is_partial_mean(self):
        """Test only entered scores are averaged."""
        self.assertEqual(calculations.monthly_average([80, 70]), Decimal('75'))
        self.assertEqual(calculations.monthly_average([80, 70, 90, 60]), Decimal('75'))

    def test_monthly_average_undefined_without_scores(self):
        self.assertIsNone(calculations.monthly_average([]))

    def test_score_out_of_range_rejected(self):
        with self.assertRaises(ValidationError):
            calculations.monthly_average([80, 150])
        with self.assertRaises(ValidationError):
            calculations.monthly_average([-1])

    def test_subject_semester_average(self):
        """Test 75 monthly and 85 exam at 50/50 give 80."""
        value = calculations.subject_semester_average(Decimal('75'), Decimal('85'), 50, 50)
        self.assertEqual(calculations.round_half_up(value), Decimal('80.00'))

    def test_subject_semester_average_undefined_without_exam(self):
        self.assertIsNone(calculations.subject_semester_average(Decimal('75'), None, 50, 50))
        self.assertIsNone(calculations.subject_semester_average(None, Decimal('85'), 50, 50))

    def test_weights_must_sum_to_100(self):
        with self.assertRaises(ValidationError):
            calculations.subject_semester_average(Decimal('75'), Decimal('85'), 60, 60)

    def test_overall_semester_average_ignores_undefined_subjects(self):
        self.assertEqual(
            calculations.overall_semester_average([Decimal('80'), None, Decimal('60')]),
            Decimal('70')
        )
        self.assertIsNone(calculations.overall_semester_average([None, None]))

    def test_annual_average_needs_both_semesters(self):
        self.assertEqual(calculations.subject_annual_average(Decimal('80'), Decimal('60')), Decimal('70'))
        self.assertIsNone(calculations.subject_annual_average(Decimal('80'), None))
        self.assertIsNone(calculations.overall_annual_average(None, Decimal('60')))

    def test_round_half_up(self):
        self.assertEqual(calculations.round_half_up(Decimal('80.125')), Decimal('80.13'))
        self.assertEqual(calculations.round_half_up(Decimal('80.124')), Decimal('80.12'))
        self.assertEqual(
            calculations.round_half_up(calculations.monthly_average([80, 85, 86])),
            Decimal('83.67')
        )

    def test_letter_grade_boundaries(self):
        """Test every band boundary belongs to the higher band."""
        cases = [
            ('100', 'A'), ('85', 'A'), ('84.99', 'B'), ('70', 'B'),
            ('69.99', 'C'), ('55', 'C'), ('54.99', 'D'), ('40', 'D'),
            ('39.99', 'E'), ('25', 'E'), ('24.99', 'F'), ('0', 'F'),
        ]
        for value, letter in cases:
            with self.subTest(value=value):
                self.assertEqual(calculations.letter_grade(Decimal(value)), letter)

    def test_is_passing(self):
        self.assertTrue(calculations.is_passing(Decimal('40')))
        self.assertFalse(calculations.is_passing(Decimal('39.99')))
        self.assertFalse(calculations.is_passing(None))

    @override_settings(GRADING_PASS_MARK=Decimal('50'))
    def test_pass_mark_configurable(self):
        self.assertFalse(calculations.is_passing(Decimal('45')))


class ResultTypesTest(SimpleTestCase):
    """Tests for result keys and result views."""

    def test_result_key_shape_validated(self):
        student = uuid.uuid4()
        with self.assertRaises(ValueError):
            ResultKey(CalculationKind.MONTHLY, student, YEAR)
        with self.assertRaises(ValueError):
            ResultKey(CalculationKind.OVERALL_ANNUAL, student, YEAR, semester=1)

    def test_result_letter_and_pass(self):
        key = ResultKey.subject_semester(uuid.uuid4(), uuid.uuid4(), 1, YEAR)
        result = CalculationResult(key, uuid.uuid4(), Decimal('80.00'), 'v1')
        self.assertEqual(result.letter_grade, 'B')
        self.assertTrue(result.passed)

    def test_results_equal_regardless_of_compute_time(self):
        key = ResultKey.monthly(uuid.uuid4(), uuid.uuid4(), 1, YEAR)
        class_id = uuid.uuid4()
        self.assertEqual(
            CalculationResult(key, class_id, Decimal('75.00'), 'v1'),
            CalculationResult(key, class_id, Decimal('75.00'), 'v1')
        )


class RankingTest(SimpleTestCase):
    """Tests for competition ranking."""

    def setUp(self):
        self.class_id = uuid.uuid4()
        self.scope = RankingScope(self.class_id, YEAR, semester=1)

    def _result(self, value, student_id=None):
        student_id = student_id or uuid.uuid4()
        key = ResultKey.overall_semester(student_id, 1, YEAR)
        return CalculationResult(key, self.class_id, Decimal(value), 'v1')

    def test_ties_share_rank(self):
        """Test 90, 85, 85, 70 rank 1, 2, 2, 4."""
        results = [self._result(v) for v in ('85', '70', '90', '85')]
        entries = rank(results, self.scope)
        self.assertEqual([e.rank for e in entries], [1, 2, 2, 4])
        self.assertEqual([e.average_value for e in entries], [Decimal('90'), Decimal('85'), Decimal('85'), Decimal('70')])

    def test_students_without_result_excluded(self):
        ranking = build_ranking([self._result('80'), None], self.scope)
        self.assertEqual(ranking.total_students, 1)

    def test_results_from_other_scopes_ignored(self):
        other = CalculationResult(
            ResultKey.overall_semester(uuid.uuid4(), 2, YEAR), self.class_id, Decimal('99'), 'v1'
        )
        ranking = build_ranking([self._result('80'), other], self.scope)
        self.assertEqual(ranking.total_students, 1)

    def test_rank_display(self):
        student = uuid.uuid4()
        ranking = build_ranking([self._result('80', student), self._result('90')], self.scope)
        self.assertEqual(ranking.rank_display(student), '2/2')
        self.assertEqual(ranking.rank_display(uuid.uuid4()), '-')


class CascadePlanTest(SimpleTestCase):
    """Tests for the recalculation order."""

    def setUp(self):
        self.student = uuid.uuid4()

    def test_single_grade_cascade_order(self):
        plan = CascadePlan([ResultKey.monthly(self.student, uuid.uuid4(), 1, YEAR)])
        self.assertEqual(
            [key.kind for key in plan],
            [
                CalculationKind.MONTHLY,
                CalculationKind.SUBJECT_SEMESTER,
                CalculationKind.OVERALL_SEMESTER,
                CalculationKind.SUBJECT_ANNUAL,
                CalculationKind.OVERALL_ANNUAL,
            ]
        )

    def test_shared_nodes_planned_once(self):
        plan = CascadePlan([
            ResultKey.monthly(self.student, uuid.uuid4(), 1, YEAR),
            ResultKey.monthly(self.student, uuid.uuid4(), 1, YEAR),
        ])
        self.assertEqual(len(plan), 8)
        self.assertIn(ResultKey.overall_semester(self.student, 1, YEAR), plan)

    def test_every_node_after_its_dependencies(self):
        plan = CascadePlan([ResultKey.monthly(self.student, uuid.uuid4(), 2, YEAR)])
        position = {key: i for i, key in enumerate(plan)}
        for key in plan:
            for dependency in plan.predecessors[key]:
                self.assertLess(position[dependency], position[key])

    def test_downstream(self):
        monthly = ResultKey.monthly(self.student, uuid.uuid4(), 1, YEAR)
        plan = CascadePlan([monthly])
        self.assertEqual(len(plan.downstream(monthly)), 4)
        self.assertEqual(plan.downstream(ResultKey.overall_annual(self.student, YEAR)), set())


class ResultStoreTest(SimpleTestCase):
    """Tests for the cache-backed result store."""

    def setUp(self):
        cache.clear()
        self.key = ResultKey.monthly(uuid.uuid4(), uuid.uuid4(), 1, YEAR)
        self.result = CalculationResult(self.key, uuid.uuid4(), Decimal('75.00'), 'v1')

    def test_put_get_invalidate(self):
        store = ResultStore()
        self.assertIsNone(store.get(self.key))
        store.put(self.key, self.result)
        self.assertEqual(store.get(self.key), self.result)
        store.invalidate(self.key)
        self.assertIsNone(store.get(self.key))

    def test_cache_errors_degrade_to_miss(self):
        store = ResultStore(cache=BrokenCache())
        with self.assertLogs('grading.store', level='WARNING'):
            store.put(self.key, self.result)
            self.assertIsNone(store.get(self.key))
            store.invalidate(self.key)

    def test_lock_is_per_student(self):
        store = ResultStore()
        student = self.key.student_id
        self.assertIs(store.lock(student, YEAR), store.lock(student, YEAR))
        with store.lock(student, YEAR):
            self.assertTrue(store.lock(student, YEAR).acquire(blocking=False))
            store.lock(student, YEAR).release()

    def test_locks_come_from_fixed_stripes(self):
        store = ResultStore(lock_stripes=8)
        locks = {id(store.lock(uuid.uuid4(), YEAR)) for _ in range(200)}
        self.assertLessEqual(len(locks), 8)

        with override_settings(GRADING_LOCK_STRIPES=4):
            self.assertEqual(len(ResultStore()._locks), 4)

    def test_unknown_setting(self):
        with self.assertRaises(AttributeError):
            config.LOCK_STRIPE_COUNT


class GradeSnapshotTest(SimpleTestCase):

    def test_chains_and_scopes(self):
        class_id, student, math, english = (uuid.uuid4() for _ in range(4))
        snapshot = GradeSnapshot([
            GradeEntry(student, math, class_id, 1, YEAR, monthly_slot(1), Decimal('80')),
            GradeEntry(student, math, class_id, 1, YEAR, SEMESTER_EXAM, Decimal('85')),
            GradeEntry(student, english, class_id, 2, YEAR, monthly_slot(1), Decimal('60')),
        ])
        chains = snapshot.chains(class_id, YEAR)
        self.assertEqual(len(chains[student]), 2)
        self.assertEqual(len(snapshot.scopes(YEAR, class_id=class_id)), 2)

        scores = snapshot.subject_scores(student, math, 1, YEAR)
        self.assertEqual(scores.monthly_scores(4), [Decimal('80')])
        self.assertEqual(scores.semester_exam, Decimal('85'))


class GradingTestMixin:
    """Shared fixtures for tests that go through the database."""

    def setUp(self):
        cache.clear()
        reset_service()
        self.class_id = uuid.uuid4()
        self.subject_id = uuid.uuid4()
        self.student_id = uuid.uuid4()

    def add_grade(self, slot, score, student_id=None, subject_id=None, semester=1, class_id=None):
        return Grade.objects.create(
            student_id=student_id or self.student_id,
            class_id=class_id or self.class_id,
            subject_id=subject_id or self.subject_id,
            semester=semester,
            academic_year=YEAR,
            exam_slot=slot,
            score=Decimal(str(score)),
        )

    def add_subject(self, monthly, exam=None, **kwargs):
        for number, score in enumerate(monthly, 1):
            self.add_grade(monthly_slot(number), score, **kwargs)
        if exam is not None:
            self.add_grade(SEMESTER_EXAM, exam, **kwargs)


class GradeModelTest(GradingTestMixin, TestCase):
    """Tests for the input models."""

    def test_unknown_slot_rejected(self):
        grade = Grade(
            student_id=self.student_id, class_id=self.class_id, subject_id=self.subject_id,
            semester=1, academic_year=YEAR, exam_slot='QUIZ', score=Decimal('50')
        )
        with self.assertRaises(ValidationError):
            grade.clean()

    def test_config_weights_validated(self):
        override = TeacherAssessmentConfig(
            class_id=self.class_id, subject_id=self.subject_id, semester=1, academic_year=YEAR,
            monthly_weight=Decimal('60'), semester_weight=Decimal('60')
        )
        with self.assertRaises(ValidationError):
            override.clean()


class ConfigurationResolverTest(GradingTestMixin, TestCase):
    """Tests for the config fallback chain."""

    def resolve(self, semester=1):
        return ConfigurationResolver().resolve(self.class_id, self.subject_id, semester, YEAR)

    def test_system_default(self):
        resolved = self.resolve()
        self.assertEqual(resolved.source, 'system')
        self.assertEqual(resolved.monthly_exam_count, 4)
        self.assertEqual(resolved.monthly_weight, Decimal('50'))

    def test_academic_year_default(self):
        DefaultAssessmentConfig.objects.create(
            academic_year=YEAR, monthly_exam_count=3,
            monthly_weight=Decimal('40'), semester_weight=Decimal('60')
        )
        resolved = self.resolve()
        self.assertEqual(resolved.source, 'academic_year')
        self.assertEqual(resolved.monthly_exam_count, 3)

    def test_semester_default_wins_over_year_default(self):
        DefaultAssessmentConfig.objects.create(academic_year=YEAR, monthly_exam_count=3)
        DefaultAssessmentConfig.objects.create(academic_year=YEAR, semester=2, monthly_exam_count=5)
        self.assertEqual(self.resolve(semester=2).monthly_exam_count, 5)
        self.assertEqual(self.resolve(semester=1).monthly_exam_count, 3)

    def test_teacher_override_wins(self):
        DefaultAssessmentConfig.objects.create(academic_year=YEAR, monthly_exam_count=3)
        TeacherAssessmentConfig.objects.create(
            class_id=self.class_id, subject_id=self.subject_id, semester=1,
            academic_year=YEAR, monthly_exam_count=2
        )
        resolved = self.resolve()
        self.assertEqual(resolved.source, 'teacher')
        self.assertEqual(resolved.monthly_exam_count, 2)

    def test_invalid_override_skipped(self):
        with signals_disabled():
            TeacherAssessmentConfig.objects.create(
                class_id=self.class_id, subject_id=self.subject_id, semester=1, academic_year=YEAR,
                monthly_weight=Decimal('60'), semester_weight=Decimal('60')
            )
        with self.assertLogs('grading.configuration', level='WARNING'):
            resolved = self.resolve()
        self.assertEqual(resolved.source, 'system')

    def test_version_tracks_values(self):
        base = AssessmentConfig(4, Decimal('50'), Decimal('50'))
        self.assertEqual(base.version, AssessmentConfig(4, Decimal('50.00'), Decimal('50.00'), 'teacher').version)
        self.assertNotEqual(base.version, AssessmentConfig(4, Decimal('40'), Decimal('60')).version)


class GradeCalculationServiceTest(GradingTestMixin, TestCase):
    """Tests for recalculation on grade and config changes."""

    def setUp(self):
        super().setUp()
        self.service = get_service()

    def subject_average(self, semester=1, subject_id=None, student_id=None):
        return self.service.subject_semester_average(
            student_id or self.student_id, subject_id or self.subject_id, semester, YEAR, self.class_id
        )

    def test_full_semester_scenario(self):
        """Test [80, 70, 90, 60] monthly and 85 exam give 80.00 / B / passed."""
        self.add_subject([80, 70, 90, 60], exam=85)

        monthly = self.service.monthly_average(self.student_id, self.subject_id, 1, YEAR, self.class_id)
        self.assertEqual(monthly.average_value, Decimal('75.00'))

        result = self.subject_average()
        self.assertEqual(result.average_value, Decimal('80.00'))
        self.assertEqual(result.letter_grade, 'B')
        self.assertTrue(result.passed)

        overall = self.service.overall_semester_average(self.student_id, 1, YEAR, self.class_id)
        self.assertEqual(overall.average_value, Decimal('80.00'))

    def test_result_details(self):
        """Test the breakdown behind 80.00: 75.00 x 50% + 85.00 x 50%."""
        self.add_subject([80, 70, 90, 60], exam=85)

        details = self.subject_average().details
        self.assertEqual(len(details.components), 4)
        self.assertEqual(details.components[0], GradeComponent(monthly_slot(1), Decimal('80.00')))
        self.assertEqual(details.semester_exam, GradeComponent(SEMESTER_EXAM, Decimal('85.00')))
        self.assertEqual(details.monthly_weight, Decimal('50.00'))
        self.assertEqual(details.semester_weight, Decimal('50.00'))
        self.assertEqual(details.monthly_average, Decimal('75.00'))
        self.assertEqual(details.weighted_monthly, Decimal('37.50'))
        self.assertEqual(details.weighted_semester, Decimal('42.50'))
        self.assertEqual(details.formula, '(75.00 × 50.00%) + (85.00 × 50.00%)')

        monthly = self.service.monthly_average(self.student_id, self.subject_id, 1, YEAR, self.class_id)
        self.assertEqual(monthly.details.formula, '(80.00 + 70.00 + 90.00 + 60.00) / 4')
        self.assertIsNone(monthly.details.semester_exam)

        overall = self.service.overall_semester_average(self.student_id, 1, YEAR, self.class_id)
        self.assertEqual(overall.details.components, (GradeComponent(str(self.subject_id), Decimal('80.00')),))

    def test_partial_monthly_scores(self):
        """Test two of four monthly scores average over two."""
        self.add_subject([80, 70])
        monthly = self.service.monthly_average(self.student_id, self.subject_id, 1, YEAR, self.class_id)
        self.assertEqual(monthly.average_value, Decimal('75.00'))

    def test_undefined_propagates_upward(self):
        self.add_subject([80, 70])
        self.assertIsNone(self.subject_average())
        self.assertIsNone(self.service.overall_semester_average(self.student_id, 1, YEAR, self.class_id))
        self.assertIsNone(self.service.overall_annual_average(self.student_id, YEAR, self.class_id))

    def test_results_stored_by_cascade(self):
        self.add_subject([80], exam=80)
        key = ResultKey.overall_semester(self.student_id, 1, YEAR)
        self.assertEqual(self.service.store.get(key).average_value, Decimal('80.00'))

    def test_overall_semester_is_unweighted_mean(self):
        other_subject = uuid.uuid4()
        self.add_subject([80], exam=80)
        self.add_subject([50], exam=70, subject_id=other_subject)
        overall = self.service.overall_semester_average(self.student_id, 1, YEAR, self.class_id)
        self.assertEqual(overall.average_value, Decimal('70.00'))

    def test_annual_only_with_both_semesters(self):
        self.add_subject([80], exam=80, semester=1)
        self.assertIsNone(self.service.subject_annual_average(self.student_id, self.subject_id, YEAR, self.class_id))

        self.add_subject([60], exam=60, semester=2)
        subject_annual = self.service.subject_annual_average(self.student_id, self.subject_id, YEAR, self.class_id)
        overall_annual = self.service.overall_annual_average(self.student_id, YEAR, self.class_id)
        self.assertEqual(subject_annual.average_value, Decimal('70.00'))
        self.assertEqual(overall_annual.average_value, Decimal('70.00'))
        self.assertEqual(
            subject_annual.details.components,
            (GradeComponent('SEMESTER_1', Decimal('80.00')), GradeComponent('SEMESTER_2', Decimal('60.00')))
        )
        self.assertEqual(overall_annual.details.formula, '(80.00 + 60.00) / 2')

    def test_recalculation_is_idempotent(self):
        self.add_subject([80, 70, 90, 60], exam=85)
        first = self.service.on_grade_changed(self.student_id, self.subject_id, self.class_id, 1, YEAR)
        second = self.service.recalculate_on_grade_change(self.student_id, self.subject_id, self.class_id, 1, YEAR)
        self.assertEqual(first, second)
        self.assertEqual(len(first), 3)

    def test_grade_update_recalculates(self):
        self.add_subject([80], exam=80)
        exam = Grade.objects.get(student_id=self.student_id, exam_slot=SEMESTER_EXAM)
        exam.score = Decimal('60')
        exam.save()
        self.assertEqual(self.subject_average().average_value, Decimal('70.00'))

    def test_grade_delete_recalculates(self):
        self.add_subject([80], exam=80)
        Grade.objects.get(student_id=self.student_id, exam_slot=SEMESTER_EXAM).delete()
        self.assertIsNone(self.subject_average())
        key = ResultKey.subject_semester(self.student_id, self.subject_id, 1, YEAR)
        self.assertIsNone(self.service.store.get(key))

    def test_slots_above_configured_count_ignored(self):
        self.add_subject([80, 80, 80, 80, 20])
        monthly = self.service.monthly_average(self.student_id, self.subject_id, 1, YEAR, self.class_id)
        self.assertEqual(monthly.average_value, Decimal('80.00'))

        TeacherAssessmentConfig.objects.create(
            class_id=self.class_id, subject_id=self.subject_id, semester=1,
            academic_year=YEAR, monthly_exam_count=5
        )
        monthly = self.service.monthly_average(self.student_id, self.subject_id, 1, YEAR, self.class_id)
        self.assertEqual(monthly.average_value, Decimal('68.00'))

    def test_config_change_recomputes_stored_results(self):
        self.add_subject([80], exam=60)
        self.assertEqual(self.subject_average().average_value, Decimal('70.00'))

        TeacherAssessmentConfig.objects.create(
            class_id=self.class_id, subject_id=self.subject_id, semester=1, academic_year=YEAR,
            monthly_weight=Decimal('30'), semester_weight=Decimal('70')
        )
        key = ResultKey.subject_semester(self.student_id, self.subject_id, 1, YEAR)
        self.assertEqual(self.service.store.get(key).average_value, Decimal('66.00'))

    def test_stale_config_detected_on_read(self):
        self.add_subject([80], exam=60)
        with signals_disabled():
            TeacherAssessmentConfig.objects.create(
                class_id=self.class_id, subject_id=self.subject_id, semester=1, academic_year=YEAR,
                monthly_weight=Decimal('30'), semester_weight=Decimal('70')
            )
        self.assertEqual(self.subject_average().average_value, Decimal('66.00'))
        overall = self.service.overall_semester_average(self.student_id, 1, YEAR, self.class_id)
        self.assertEqual(overall.average_value, Decimal('66.00'))

    def test_invalid_score_raises_to_caller(self):
        with self.assertRaises(ValidationError):
            self.add_grade(monthly_slot(1), 150)

    def test_wrong_class_is_missing_dependency(self):
        self.add_subject([80])
        with self.assertRaises(MissingDependencyError):
            self.service.on_grade_changed(self.student_id, self.subject_id, uuid.uuid4(), 1, YEAR)

    def test_deleting_last_grade_of_previous_class(self):
        """Test a student who moved class can lose their old grades."""
        new_class = uuid.uuid4()
        self.add_grade(monthly_slot(1), 80, semester=1)
        self.add_grade(monthly_slot(1), 70, semester=2, class_id=new_class)
        old_key = ResultKey.monthly(self.student_id, self.subject_id, 1, YEAR)
        self.assertEqual(self.service.store.get(old_key).average_value, Decimal('80.00'))

        Grade.objects.get(student_id=self.student_id, semester=1).delete()

        self.assertIsNone(self.service.store.get(old_key))
        monthly = self.service.monthly_average(self.student_id, self.subject_id, 2, YEAR)
        self.assertEqual(monthly.average_value, Decimal('70.00'))
        self.assertEqual(monthly.class_id, new_class)

    def test_read_without_class_when_grades_span_classes(self):
        other_class = uuid.uuid4()
        self.add_subject([80])
        self.add_subject([60], class_id=other_class)

        with self.assertRaises(AmbiguousClassError):
            self.service.monthly_average(self.student_id, self.subject_id, 1, YEAR)

        first = self.service.monthly_average(self.student_id, self.subject_id, 1, YEAR, self.class_id)
        second = self.service.monthly_average(self.student_id, self.subject_id, 1, YEAR, other_class)
        self.assertEqual(first.average_value, Decimal('80.00'))
        self.assertEqual(second.average_value, Decimal('60.00'))

    def test_grade_changes_with_signals_disabled_detected_on_read(self):
        other_subject = uuid.uuid4()
        self.add_subject([80], exam=80)
        self.assertEqual(self.subject_average().average_value, Decimal('80.00'))

        with signals_disabled():
            exam = Grade.objects.get(
                student_id=self.student_id, subject_id=self.subject_id, exam_slot=SEMESTER_EXAM
            )
            exam.score = Decimal('20')
            exam.save()
            self.add_subject([40], exam=40, subject_id=other_subject)

        overall = self.service.overall_semester_average(self.student_id, 1, YEAR, self.class_id)
        self.assertEqual(overall.average_value, Decimal('45.00'))
        self.assertEqual(self.subject_average().average_value, Decimal('50.00'))

    def test_signals_disabled_nests(self):
        key = ResultKey.monthly(self.student_id, self.subject_id, 1, YEAR)
        with signals_disabled():
            with signals_disabled():
                self.add_grade(monthly_slot(1), 80)
            self.add_grade(monthly_slot(2), 70)
        self.assertIsNone(self.service.store.get(key))

        self.add_grade(monthly_slot(3), 60)
        self.assertEqual(self.service.store.get(key).average_value, Decimal('70.00'))

    def test_signals_disabled_skips_recalculation(self):
        with signals_disabled():
            self.add_subject([80], exam=80)
        key = ResultKey.subject_semester(self.student_id, self.subject_id, 1, YEAR)
        self.assertIsNone(self.service.store.get(key))
        # Reads still compute on demand
        self.assertEqual(self.subject_average().average_value, Decimal('80.00'))

    def test_average_calculated_signal(self):
        received = []

        def receiver(sender, result, **kwargs):
            received.append(result)

        average_calculated.connect(receiver)
        self.addCleanup(average_calculated.disconnect, receiver)

        self.add_grade(monthly_slot(1), 80)
        self.assertEqual([r.kind for r in received], [CalculationKind.MONTHLY])

    def test_rankings_follow_grade_changes(self):
        students = [uuid.uuid4() for _ in range(4)]
        for student_id, score in zip(students, (90, 85, 85, 70)):
            self.add_subject([score], exam=score, student_id=student_id)

        ranking = self.service.class_rankings(self.class_id, YEAR, semester=1)
        self.assertEqual([e.rank for e in ranking.entries], [1, 2, 2, 4])
        self.assertEqual(ranking.rank_of(students[3]), 4)

        for grade in Grade.objects.filter(student_id=students[3]):
            grade.score = Decimal('100')
            grade.save()

        ranking = self.service.class_rankings(self.class_id, YEAR, semester=1)
        self.assertEqual(ranking.rank_of(students[3]), 1)
        subject_ranking = self.service.subject_rankings(self.class_id, self.subject_id, YEAR, semester=1)
        self.assertEqual(subject_ranking.rank_display(students[3]), '1/4')

    def test_cache_outage_degrades_to_recomputation(self):
        with signals_disabled():
            self.add_subject([80, 70, 90, 60], exam=85)
        service = GradeCalculationService(store=ResultStore(cache=BrokenCache()))
        with self.assertLogs('grading.store', level='WARNING'):
            result = service.subject_semester_average(self.student_id, self.subject_id, 1, YEAR, self.class_id)
        self.assertEqual(result.average_value, Decimal('80.00'))


class ClassRecalculationTest(GradingTestMixin, TestCase):
    """Tests for whole-class recalculation with a malformed grade."""

    def setUp(self):
        super().setUp()
        self.students = [uuid.uuid4() for _ in range(4)]
        self.bad_student = self.students[2]
        with signals_disabled():
            for student_id, score in zip(self.students, (90, 80, 70, 60)):
                self.add_subject([score], exam=score, student_id=student_id)
            bad = Grade.objects.get(student_id=self.bad_student, exam_slot=monthly_slot(1))
            bad.score = Decimal('150')
            bad.save()

    def assert_partial_batch(self, batch):
        self.assertEqual(len(batch.successes), 3)
        self.assertEqual(len(batch.failures), 1)
        self.assertEqual(batch.failures[0].student_id, self.bad_student)
        self.assertNotIn(self.bad_student, batch.successes)

        scope = RankingScope(self.class_id, YEAR, semester=1)
        ranking = next(r for r in batch.rankings if r.scope == scope)
        self.assertEqual(ranking.total_students, 3)
        self.assertIsNone(ranking.rank_of(self.bad_student))
        self.assertEqual([e.rank for e in ranking.entries], [1, 2, 3])

    def test_batch_records_failure_and_continues(self):
        batch = get_service().calculate_class_averages(self.class_id, 1, YEAR)
        self.assert_partial_batch(batch)
        with self.assertRaises(PartialBatchFailure):
            batch.raise_for_failures()

    def test_batch_with_worker_threads(self):
        batch = GradeCalculationService(max_workers=4).calculate_class_averages(self.class_id, 1, YEAR)
        self.assert_partial_batch(batch)

    def test_batch_summary(self):
        summary = get_service().calculate_class_averages(self.class_id, 1, YEAR).as_dict()
        self.assertEqual(summary['students_succeeded'], 3)
        self.assertEqual(summary['students_failed'], 1)
        self.assertEqual(summary['failures'][0]['student_id'], str(self.bad_student))

    def test_celery_task(self):
        summary = calculate_class_averages_task.apply(args=[str(self.class_id), 1, YEAR]).get()
        self.assertFalse(summary['success'])
        self.assertEqual(summary['students_succeeded'], 3)

    def test_config_change_recalculates_class(self):
        batches = get_service().on_config_changed(YEAR, class_id=self.class_id)
        self.assertEqual(len(batches), 1)
        self.assertEqual(len(batches[0].successes), 3)

    @override_settings(GRADING_ASYNC_RECALCULATION=True)
    def test_config_change_queued_when_async(self):
        with patch('grading.tasks.recalculate_config_scope_task.delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                TeacherAssessmentConfig.objects.create(
                    class_id=self.class_id, subject_id=self.subject_id, semester=1, academic_year=YEAR
                )
        delay.assert_called_once_with(
            academic_year=YEAR, class_id=str(self.class_id), subject_id=str(self.subject_id), semester=1
        )


class RecalculateAveragesCommandTest(GradingTestMixin, TestCase):
    """Tests for the recalculate_averages management command."""

    def test_recalculates_class(self):
        with signals_disabled():
            self.add_subject([80], exam=80)
        out = StringIO()
        call_command(
            'recalculate_averages', '--class', str(self.class_id), '--semester', '1', '--year', YEAR,
            stdout=out
        )
        self.assertIn('All averages recalculated', out.getvalue())
        key = ResultKey.overall_semester(self.student_id, 1, YEAR)
        self.assertEqual(get_service().store.get(key).average_value, Decimal('80.00'))

    def test_config_scope(self):
        with signals_disabled():
            self.add_subject([80], exam=80)
        out = StringIO()
        call_command('recalculate_averages', '--config-scope', '--year', YEAR, stdout=out)
        self.assertIn('1 student(s) recalculated', out.getvalue())

    def test_failed_chain_is_command_error(self):
        with signals_disabled():
            self.add_subject([150], exam=80)
        with self.assertRaises(CommandError):
            call_command(
                'recalculate_averages', '--class', str(self.class_id), '--semester', '1', '--year', YEAR,
                stdout=StringIO()
            )

    def test_class_and_semester_required(self):
        with self.assertRaises(CommandError):
            call_command('recalculate_averages', '--year', YEAR, stdout=StringIO())
