"""
Observability for the clinical core: PHI-safe JSON logging, request
correlation, domain events, Prometheus counters and health probes.
"""
from .events import log_blocked_mutation, log_domain_event
from .logging import get_sanitized_logger

__all__ = ['log_domain_event', 'log_blocked_mutation', 'get_sanitized_logger']
