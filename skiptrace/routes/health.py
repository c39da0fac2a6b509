"""
Health routes: liveness, circuit breaker states and guardrail snapshot.
"""
import logging
from flask import Blueprint, jsonify

from skiptrace.services.circuit_breaker import get_all_breakers

logger = logging.getLogger('routes.health')

bp = Blueprint('health', __name__)


@bp.route('/health')
def health_check():
    """Health check endpoint."""
    return jsonify({"status": "healthy"}), 200


@bp.route('/api/health')
def api_health():
    """Circuit breaker state for every registered provider."""
    return jsonify({'services': {name: cb.get_health() for name, cb in get_all_breakers().items()}})


@bp.route('/api/health/<service>/reset', methods=['POST'])
def reset_circuit(service):
    breaker = get_all_breakers().get(service)
    if breaker is None:
        return jsonify({'error': f'Unknown service: {service}'}), 404
    breaker.reset()
    return jsonify({'ok': True, 'service': service, 'state': breaker.state})


@bp.route('/api/guardrails')
def guardrails():
    """Budget, rate-limit and breaker snapshot for the active provider."""
    from skiptrace.pipeline.orchestrator import get_orchestrator

    orchestrator = get_orchestrator()
    snapshot = {'provider': orchestrator.provider_name, 'budget': orchestrator.budget.snapshot()}
    if orchestrator.rate_limiter is not None:
        snapshot['rate'] = orchestrator.rate_limiter.snapshot()
    if orchestrator.breaker is not None:
        snapshot['breaker'] = orchestrator.breaker.get_health()
    return jsonify(snapshot)
