"""
Single-lookup routes plus forensic and cache administration endpoints.
"""
import logging
from flask import Blueprint, request, jsonify

from skiptrace.errors import (
    ValidationError, BudgetExceededError, AuthConfigurationError,
    TransientProviderError, ProviderNotFoundError, SkipTraceError,
)
from skiptrace.pipeline.orchestrator import get_orchestrator
from skiptrace.services import cache_store, ledger
from skiptrace.services.circuit_breaker import CircuitOpenError

logger = logging.getLogger('routes.lookups')

bp = Blueprint('lookups', __name__)


@bp.route('/api/lookups', methods=['POST'])
def lookup():
    """Resolve one subject. `force` bypasses the cache but not the guardrails."""
    data = request.get_json(silent=True) or {}
    subject_id = data.get('subject_id')
    force = bool(data.get('force', False))

    try:
        result = get_orchestrator().resolve(
            str(subject_id) if subject_id is not None else None,
            data.get('address'),
            data.get('person'),
            force=force,
        )
    except ValidationError as e:
        return jsonify({'error': e.describe()}), 400
    except ProviderNotFoundError as e:
        return jsonify({'error': e.describe()}), 404
    except BudgetExceededError as e:
        return jsonify({'error': e.describe(), 'reason': e.reason,
                        'spent_cents': e.spent_cents, 'cap_cents': e.cap_cents}), 429
    except AuthConfigurationError as e:
        logger.critical("Provider configuration error: %s", e)
        return jsonify({'error': e.describe()}), 503
    except (TransientProviderError, CircuitOpenError) as e:
        return jsonify({'error': f'provider unavailable: {e}'}), 503
    except SkipTraceError as e:
        return jsonify({'error': e.describe()}), 502

    return jsonify(result.to_dict())


@bp.route('/api/subjects/<subject_id>/calls')
def subject_calls(subject_id):
    """Every ledger row recorded for a subject, oldest first."""
    limit = request.args.get('limit', 200, type=int)
    return jsonify({'subject_id': subject_id, 'calls': ledger.calls_for_subject(subject_id, limit=limit)})


@bp.route('/api/cache/purge', methods=['POST'])
def purge_cache():
    return jsonify({'purged': cache_store.purge_expired()})
