"""
Pure average computations.

Every function here is free of I/O. Scores are percentages in [0, 100];
anything outside that range, or a weight pair not summing to 100, raises
ValidationError. An average that cannot be computed yet is returned as None,
never as zero.

Rounding (two decimals, half-up) is applied once, when a result is built, by
round_half_up(). The functions below return unrounded Decimals.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.core.exceptions import ValidationError

from . import config


HUNDRED = Decimal('100')
TWO_PLACES = Decimal('0.01')

# (minimum inclusive, letter), highest band first
LETTER_BANDS = (
    (Decimal('85'), 'A'),
    (Decimal('70'), 'B'),
    (Decimal('55'), 'C'),
    (Decimal('40'), 'D'),
    (Decimal('25'), 'E'),
    (Decimal('0'), 'F'),
)


def to_decimal(value):
    """Convert a score-like value to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f'Invalid numeric value: {value!r}', code='invalid_score') from exc


def validate_score(score):
    """Return score as Decimal, rejecting values outside [0, 100]."""
    if score is None:
        raise ValidationError('Score is required', code='invalid_score')
    value = to_decimal(score)
    if not value.is_finite() or value < 0 or value > HUNDRED:
        raise ValidationError(
            f'Score {value} is out of range (0-100)',
            code='score_out_of_range'
        )
    return value


def validate_weights(monthly_weight, semester_weight):
    """Return both weights as Decimals, rejecting pairs that don't sum to 100."""
    monthly = to_decimal(monthly_weight)
    semester = to_decimal(semester_weight)
    if monthly < 0 or semester < 0:
        raise ValidationError('Weights cannot be negative', code='invalid_config')
    if monthly + semester != HUNDRED:
        raise ValidationError(
            f'Monthly and semester weights must sum to 100 (got {monthly} + {semester})',
            code='weights_must_sum_to_100'
        )
    return monthly, semester


def round_half_up(value):
    """Round to two decimals, half-up (80.125 -> 80.13)."""
    if value is None:
        return None
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def weighted(value, weight):
    """Share of value carried by a percentage weight."""
    return to_decimal(value) * to_decimal(weight) / HUNDRED


def _mean(values):
    return sum(values, Decimal('0')) / Decimal(len(values))


def monthly_average(scores):
    """
    Mean of the monthly exam scores entered so far.

    Only entered scores count: two scores out of four configured exams are
    averaged over two. Returns None when no score has been entered.
    """
    values = [validate_score(score) for score in scores]
    if not values:
        return None
    return _mean(values)


def subject_semester_average(monthly_avg, semester_exam_score, monthly_weight, semester_weight):
    """
    Weighted semester average for one subject:
        monthly_avg * monthly_weight/100 + semester_exam * semester_weight/100

    Undefined (None) until both the monthly average and the semester exam exist.
    """
    monthly_weight, semester_weight = validate_weights(monthly_weight, semester_weight)
    monthly = validate_score(monthly_avg) if monthly_avg is not None else None
    exam = validate_score(semester_exam_score) if semester_exam_score is not None else None
    if monthly is None or exam is None:
        return None
    return weighted(monthly, monthly_weight) + weighted(exam, semester_weight)


def overall_semester_average(subject_averages):
    """Unweighted mean of the subjects that have a defined semester average."""
    defined = [validate_score(avg) for avg in subject_averages if avg is not None]
    if not defined:
        return None
    return _mean(defined)


def _mean_of_semesters(first, second):
    if first is None or second is None:
        return None
    return (validate_score(first) + validate_score(second)) / Decimal('2')


def subject_annual_average(first_semester, second_semester):
    """Mean of a subject's two semester averages; None if either is missing."""
    return _mean_of_semesters(first_semester, second_semester)


def overall_annual_average(first_semester, second_semester):
    """Mean of the two overall semester averages; None if either is missing."""
    return _mean_of_semesters(first_semester, second_semester)


def letter_grade(average):
    """Letter band of an average. Band boundaries belong to the higher band."""
    value = to_decimal(average)
    for minimum, letter in LETTER_BANDS:
        if value >= minimum:
            return letter
    return 'F'


def is_passing(average, pass_mark=None):
    """Check if an average meets the pass mark (40 by default)."""
    if average is None:
        return False
    if pass_mark is None:
        pass_mark = config.PASS_MARK
    return to_decimal(average) >= to_decimal(pass_mark)
