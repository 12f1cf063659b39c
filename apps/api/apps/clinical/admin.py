from django.contrib import admin
from .models import (
    Patient, ProcedureCatalog, Encounter, Diagnosis, DiagnosisStatusHistory,
    TreatmentPlan, TreatmentStep, Procedure, ClinicalAuditLog
)


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = ['first_name', 'last_name', 'date_of_birth', 'created_at']
    search_fields = ['first_name', 'last_name']
    readonly_fields = ['id', 'created_at', 'updated_at']


@admin.register(ProcedureCatalog)
class ProcedureCatalogAdmin(admin.ModelAdmin):
    list_display = ['code', 'name', 'default_price_cents', 'applies_to_tooth', 'applies_to_surface', 'is_active']
    list_filter = ['is_active', 'applies_to_tooth', 'applies_to_surface']
    search_fields = ['code', 'name']
    readonly_fields = ['id', 'created_at', 'updated_at']


# Clinical records change only through the service layer; the admin is read-only.
class ReadOnlyClinicalAdmin(admin.ModelAdmin):
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Encounter)
class EncounterAdmin(ReadOnlyClinicalAdmin):
    list_display = ['patient', 'appointment_ref', 'status', 'finished_at', 'performed_by', 'created_at']
    list_filter = ['status']
    search_fields = ['appointment_ref', 'patient__last_name']


class DiagnosisStatusHistoryInline(admin.TabularInline):
    model = DiagnosisStatusHistory
    extra = 0
    readonly_fields = ['previous_status', 'new_status', 'reason', 'changed_at', 'changed_by', 'encounter']
    can_delete = False


@admin.register(Diagnosis)
class DiagnosisAdmin(ReadOnlyClinicalAdmin):
    list_display = ['label', 'code', 'patient', 'status', 'noted_at', 'resolved_at']
    list_filter = ['status']
    search_fields = ['label', 'code']
    inlines = [DiagnosisStatusHistoryInline]


class TreatmentStepInline(admin.TabularInline):
    model = TreatmentStep
    extra = 0
    fields = ['order', 'procedure_catalog', 'service_type', 'tooth_number', 'tooth_surface',
              'status', 'current_session', 'total_sessions']
    readonly_fields = fields
    can_delete = False


@admin.register(TreatmentPlan)
class TreatmentPlanAdmin(ReadOnlyClinicalAdmin):
    list_display = ['title', 'patient', 'status', 'closed_at', 'created_at']
    list_filter = ['status']
    search_fields = ['title', 'patient__last_name']
    inlines = [TreatmentStepInline]


@admin.register(Procedure)
class ProcedureAdmin(ReadOnlyClinicalAdmin):
    list_display = ['service_type', 'encounter', 'quantity', 'tooth_number', 'total_cents', 'created_at']
    search_fields = ['service_type']


@admin.register(ClinicalAuditLog)
class ClinicalAuditLogAdmin(ReadOnlyClinicalAdmin):
    list_display = ['created_at', 'entity_type', 'entity_id', 'previous_state', 'new_state', 'actor_user']
    list_filter = ['entity_type', 'new_state']
    search_fields = ['entity_id']
