"""
Prometheus counters for clinical state changes, scraped at /metrics.
"""
from django.http import HttpResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

CLINICAL_TRANSITIONS = Counter(
    'clinical_transitions_total',
    'Clinical domain events by entity type and result',
    ['entity_type', 'result'],
)

CLINICAL_CONFLICTS = Counter(
    'clinical_conflicts_total',
    'Requests refused with 409 by entity type and reason',
    ['entity_type', 'reason'],
)


def record_transition(entity_type, result):
    CLINICAL_TRANSITIONS.labels(entity_type=entity_type, result=result).inc()


def record_conflict(entity_type, reason):
    CLINICAL_CONFLICTS.labels(entity_type=entity_type or 'unknown', reason=reason or 'conflict').inc()


def metrics_view(request):
    return HttpResponse(generate_latest(), content_type=CONTENT_TYPE_LATEST)
