"""
Clinical core URLs - encounters, diagnoses, treatment plans, procedures, audit.
"""
from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import (
    ClinicalAuditViewSet,
    DiagnosisViewSet,
    EncounterViewSet,
    PatientViewSet,
    ProcedureCatalogViewSet,
    ProcedureViewSet,
    TreatmentPlanViewSet,
    TreatmentStepViewSet,
)

router = DefaultRouter()
router.register(r'patients', PatientViewSet, basename='patient')
router.register(r'procedure-catalog', ProcedureCatalogViewSet, basename='procedure-catalog')
router.register(r'encounters', EncounterViewSet, basename='encounter')
router.register(r'diagnoses', DiagnosisViewSet, basename='diagnosis')
router.register(r'treatment-plans', TreatmentPlanViewSet, basename='treatment-plan')
router.register(r'treatment-steps', TreatmentStepViewSet, basename='treatment-step')
router.register(r'procedures', ProcedureViewSet, basename='procedure')
router.register(r'audit', ClinicalAuditViewSet, basename='clinical-audit')

urlpatterns = [
    path('', include(router.urls)),
]
