from decimal import Decimal
import uuid

import django.core.validators
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Grade',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('student_id', models.UUIDField(db_index=True)),
                ('class_id', models.UUIDField(db_index=True)),
                ('subject_id', models.UUIDField(db_index=True)),
                ('semester', models.PositiveSmallIntegerField(choices=[(1, 'Semester 1'), (2, 'Semester 2')])),
                ('academic_year', models.CharField(help_text='Academic year label (e.g., 2024-2025)', max_length=20)),
                ('exam_slot', models.CharField(help_text='MONTHLY_1..MONTHLY_n or SEMESTER_EXAM', max_length=30)),
                ('score', models.DecimalField(decimal_places=2, help_text='Score as a percentage (0-100)', max_digits=5, validators=[django.core.validators.MinValueValidator(Decimal('0')), django.core.validators.MaxValueValidator(Decimal('100'))])),
                ('teacher_id', models.UUIDField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Grade',
                'verbose_name_plural': 'Grades',
                'db_table': 'grading_grade',
                'ordering': ['academic_year', 'semester', 'student_id', 'subject_id', 'exam_slot'],
                'indexes': [
                    models.Index(fields=['class_id', 'academic_year', 'semester'], name='grade_class_year_sem_idx'),
                    models.Index(fields=['student_id', 'academic_year', 'semester'], name='grade_student_year_sem_idx'),
                ],
                'unique_together': {('student_id', 'class_id', 'subject_id', 'semester', 'academic_year', 'exam_slot')},
            },
        ),
        migrations.CreateModel(
            name='TeacherAssessmentConfig',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('teacher_id', models.UUIDField(blank=True, null=True)),
                ('class_id', models.UUIDField()),
                ('subject_id', models.UUIDField()),
                ('semester', models.PositiveSmallIntegerField(choices=[(1, 'Semester 1'), (2, 'Semester 2')])),
                ('academic_year', models.CharField(max_length=20)),
                ('monthly_exam_count', models.PositiveSmallIntegerField(default=4, help_text='Number of monthly exams in the semester', validators=[django.core.validators.MinValueValidator(1)])),
                ('monthly_weight', models.DecimalField(decimal_places=2, default=Decimal('50.00'), help_text='Weight of the monthly average in the semester average (%)', max_digits=5, validators=[django.core.validators.MinValueValidator(0), django.core.validators.MaxValueValidator(100)])),
                ('semester_weight', models.DecimalField(decimal_places=2, default=Decimal('50.00'), help_text='Weight of the semester exam in the semester average (%)', max_digits=5, validators=[django.core.validators.MinValueValidator(0), django.core.validators.MaxValueValidator(100)])),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Teacher Assessment Config',
                'verbose_name_plural': 'Teacher Assessment Configs',
                'db_table': 'teacher_assessment_config',
                'ordering': ['academic_year', 'semester'],
                'unique_together': {('class_id', 'subject_id', 'semester', 'academic_year')},
            },
        ),
        migrations.CreateModel(
            name='DefaultAssessmentConfig',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('academic_year', models.CharField(max_length=20)),
                ('semester', models.PositiveSmallIntegerField(blank=True, choices=[(1, 'Semester 1'), (2, 'Semester 2')], help_text='Leave empty to apply to the whole academic year', null=True)),
                ('monthly_exam_count', models.PositiveSmallIntegerField(default=4, validators=[django.core.validators.MinValueValidator(1)])),
                ('monthly_weight', models.DecimalField(decimal_places=2, default=Decimal('50.00'), max_digits=5, validators=[django.core.validators.MinValueValidator(0), django.core.validators.MaxValueValidator(100)])),
                ('semester_weight', models.DecimalField(decimal_places=2, default=Decimal('50.00'), max_digits=5, validators=[django.core.validators.MinValueValidator(0), django.core.validators.MaxValueValidator(100)])),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Default Assessment Config',
                'verbose_name_plural': 'Default Assessment Configs',
                'db_table': 'default_assessment_config',
                'ordering': ['academic_year', 'semester'],
                'unique_together': {('academic_year', 'semester')},
            },
        ),
    ]
