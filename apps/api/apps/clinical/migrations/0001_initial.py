from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
import uuid


DIAGNOSIS_STATUS_CHOICES = [
    ('ACTIVE', 'Active'),
    ('UNDER_FOLLOW_UP', 'Under follow-up'),
    ('RESOLVED', 'Resolved'),
    ('DISCARDED', 'Discarded'),
]

TOOTH_SURFACE_CHOICES = [
    ('O', 'Occlusal'),
    ('M', 'Mesial'),
    ('D', 'Distal'),
    ('V', 'Vestibular'),
    ('L', 'Lingual/Palatal'),
    ('MO', 'Mesio-occlusal'),
    ('DO', 'Disto-occlusal'),
    ('VO', 'Vestibulo-occlusal'),
    ('LO', 'Linguo-occlusal'),
    ('MOD', 'Mesio-occluso-distal'),
    ('MV', 'Mesio-vestibular'),
    ('DL', 'Disto-lingual'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('authz', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Patient',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('first_name', models.CharField(max_length=100)),
                ('last_name', models.CharField(max_length=100)),
                ('date_of_birth', models.DateField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Patient',
                'verbose_name_plural': 'Patients',
                'db_table': 'patient',
                'indexes': [models.Index(fields=['last_name', 'first_name'], name='idx_patient_name')],
            },
        ),
        migrations.CreateModel(
            name='ProcedureCatalog',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('code', models.CharField(max_length=50, unique=True)),
                ('name', models.CharField(max_length=200)),
                ('default_price_cents', models.PositiveIntegerField(blank=True, null=True)),
                ('applies_to_tooth', models.BooleanField(default=False)),
                ('applies_to_surface', models.BooleanField(default=False)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Procedure Catalog Entry',
                'verbose_name_plural': 'Procedure Catalog',
                'db_table': 'procedure_catalog',
                'ordering': ['code'],
                'indexes': [models.Index(fields=['is_active'], name='idx_proc_catalog_active')],
            },
        ),
        migrations.CreateModel(
            name='Encounter',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('appointment_ref', models.CharField(
                    blank=True,
                    help_text='Identifier of the appointment this encounter belongs to',
                    max_length=64,
                    null=True,
                    unique=True
                )),
                ('status', models.CharField(
                    choices=[('DRAFT', 'Draft'), ('FINAL', 'Final')],
                    default='DRAFT',
                    max_length=10
                )),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
                ('row_version', models.IntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('patient', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='encounters',
                    to='clinical.patient'
                )),
                ('performed_by', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='performed_encounters',
                    to=settings.AUTH_USER_MODEL
                )),
            ],
            options={
                'verbose_name': 'Encounter',
                'verbose_name_plural': 'Encounters',
                'db_table': 'encounter',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['patient'], name='idx_encounter_patient'),
                    models.Index(fields=['status'], name='idx_encounter_status'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Diagnosis',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('label', models.CharField(max_length=200)),
                ('code', models.CharField(blank=True, max_length=50, null=True)),
                ('catalog_ref', models.CharField(blank=True, max_length=64, null=True)),
                ('status', models.CharField(choices=DIAGNOSIS_STATUS_CHOICES, default='ACTIVE', max_length=20)),
                ('noted_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('resolved_at', models.DateTimeField(blank=True, null=True)),
                ('notes', models.TextField(blank=True, null=True)),
                ('row_version', models.IntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by_user', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='created_diagnoses',
                    to=settings.AUTH_USER_MODEL
                )),
                ('encounter', models.ForeignKey(
                    help_text='Encounter where the diagnosis was first recorded',
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='diagnoses',
                    to='clinical.encounter'
                )),
                ('patient', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='diagnoses',
                    to='clinical.patient'
                )),
            ],
            options={
                'verbose_name': 'Diagnosis',
                'verbose_name_plural': 'Diagnoses',
                'db_table': 'diagnosis',
                'ordering': ['-noted_at'],
                'indexes': [
                    models.Index(fields=['patient', 'status'], name='idx_diagnosis_patient_status'),
                    models.Index(fields=['encounter'], name='idx_diagnosis_encounter'),
                ],
            },
        ),
        migrations.CreateModel(
            name='DiagnosisStatusHistory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('previous_status', models.CharField(blank=True, choices=DIAGNOSIS_STATUS_CHOICES, max_length=20, null=True)),
                ('new_status', models.CharField(choices=DIAGNOSIS_STATUS_CHOICES, max_length=20)),
                ('reason', models.TextField(blank=True, null=True)),
                ('changed_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('changed_by', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='diagnosis_status_changes',
                    to=settings.AUTH_USER_MODEL
                )),
                ('diagnosis', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='status_history',
                    to='clinical.diagnosis'
                )),
                ('encounter', models.ForeignKey(
                    blank=True,
                    help_text='Encounter in which the change was made, if any',
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='diagnosis_status_changes',
                    to='clinical.encounter'
                )),
            ],
            options={
                'verbose_name': 'Diagnosis Status History',
                'verbose_name_plural': 'Diagnosis Status History',
                'db_table': 'diagnosis_status_history',
                'ordering': ['changed_at', 'id'],
                'indexes': [models.Index(fields=['diagnosis', 'changed_at'], name='idx_dx_history_diagnosis')],
            },
        ),
        migrations.CreateModel(
            name='TreatmentPlan',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('title', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True, null=True)),
                ('status', models.CharField(
                    choices=[('ACTIVE', 'Active'), ('COMPLETED', 'Completed'), ('CANCELLED', 'Cancelled')],
                    default='ACTIVE',
                    max_length=20
                )),
                ('closed_at', models.DateTimeField(blank=True, null=True)),
                ('row_version', models.IntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by_user', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='created_treatment_plans',
                    to=settings.AUTH_USER_MODEL
                )),
                ('patient', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='treatment_plans',
                    to='clinical.patient'
                )),
            ],
            options={
                'verbose_name': 'Treatment Plan',
                'verbose_name_plural': 'Treatment Plans',
                'db_table': 'treatment_plan',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['patient', 'status'], name='idx_plan_patient_status')],
                'constraints': [
                    models.UniqueConstraint(
                        condition=models.Q(status='ACTIVE'),
                        fields=('patient',),
                        name='uniq_active_treatment_plan_per_patient'
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='TreatmentStep',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('order', models.PositiveIntegerField()),
                ('service_type', models.CharField(blank=True, max_length=200, null=True)),
                ('tooth_number', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('tooth_surface', models.CharField(blank=True, choices=TOOTH_SURFACE_CHOICES, max_length=3, null=True)),
                ('status', models.CharField(
                    choices=[
                        ('PENDING', 'Pending'),
                        ('SCHEDULED', 'Scheduled'),
                        ('IN_PROGRESS', 'In progress'),
                        ('COMPLETED', 'Completed'),
                        ('CANCELLED', 'Cancelled'),
                        ('DEFERRED', 'Deferred'),
                    ],
                    default='PENDING',
                    max_length=20
                )),
                ('priority', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('requires_multiple_sessions', models.BooleanField(default=False)),
                ('total_sessions', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('current_session', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('estimated_duration_min', models.PositiveIntegerField(blank=True, null=True)),
                ('estimated_cost_cents', models.PositiveIntegerField(blank=True, null=True)),
                ('notes', models.TextField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('row_version', models.IntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('plan', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='steps',
                    to='clinical.treatmentplan'
                )),
                ('procedure_catalog', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='treatment_steps',
                    to='clinical.procedurecatalog'
                )),
            ],
            options={
                'verbose_name': 'Treatment Step',
                'verbose_name_plural': 'Treatment Steps',
                'db_table': 'treatment_step',
                'ordering': ['plan', 'order'],
                'indexes': [models.Index(fields=['status'], name='idx_treatment_step_status')],
                'constraints': [
                    models.UniqueConstraint(fields=('plan', 'order'), name='uniq_treatment_step_order'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Procedure',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('service_type', models.CharField(max_length=200)),
                ('quantity', models.PositiveIntegerField(default=1)),
                ('tooth_number', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('tooth_surface', models.CharField(blank=True, choices=TOOTH_SURFACE_CHOICES, max_length=3, null=True)),
                ('unit_price_cents', models.PositiveIntegerField(blank=True, null=True)),
                ('total_cents', models.PositiveIntegerField(blank=True, null=True)),
                ('result_notes', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by_user', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='recorded_procedures',
                    to=settings.AUTH_USER_MODEL
                )),
                ('diagnosis', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='procedures',
                    to='clinical.diagnosis'
                )),
                ('encounter', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='procedures',
                    to='clinical.encounter'
                )),
                ('procedure_catalog', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='procedures',
                    to='clinical.procedurecatalog'
                )),
                ('treatment_step', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='procedures',
                    to='clinical.treatmentstep'
                )),
            ],
            options={
                'verbose_name': 'Procedure',
                'verbose_name_plural': 'Procedures',
                'db_table': 'procedure',
                'ordering': ['created_at'],
                'indexes': [
                    models.Index(fields=['encounter'], name='idx_procedure_encounter'),
                    models.Index(fields=['treatment_step'], name='idx_procedure_step'),
                    models.Index(fields=['diagnosis'], name='idx_procedure_diagnosis'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ClinicalAuditLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('entity_type', models.CharField(
                    choices=[
                        ('ENCOUNTER', 'Encounter'),
                        ('DIAGNOSIS', 'Diagnosis'),
                        ('TREATMENT_PLAN', 'Treatment Plan'),
                        ('TREATMENT_STEP', 'Treatment Step'),
                        ('PROCEDURE', 'Procedure'),
                    ],
                    max_length=20
                )),
                ('entity_id', models.UUIDField()),
                ('previous_state', models.CharField(blank=True, max_length=30, null=True)),
                ('new_state', models.CharField(max_length=30)),
                ('reason', models.TextField(blank=True, null=True)),
                ('context', models.JSONField(blank=True, default=dict)),
                ('actor_user', models.ForeignKey(
                    blank=True,
                    help_text='User who performed the action (null for system actions)',
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='clinical_audit_logs',
                    to=settings.AUTH_USER_MODEL
                )),
                ('patient', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='audit_logs',
                    to='clinical.patient'
                )),
            ],
            options={
                'verbose_name': 'Clinical Audit Log',
                'verbose_name_plural': 'Clinical Audit Logs',
                'db_table': 'clinical_audit_log',
                'ordering': ['created_at', 'id'],
                'indexes': [
                    models.Index(fields=['entity_type', 'entity_id'], name='idx_audit_entity'),
                    models.Index(fields=['patient'], name='idx_audit_patient'),
                    models.Index(fields=['created_at'], name='idx_audit_created_at'),
                ],
            },
        ),
    ]
