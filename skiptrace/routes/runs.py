"""
Run routes: start, status, report, pause/resume and retry of failed items.
"""
import logging
from flask import Blueprint, request, jsonify

from skiptrace.config import ITEM_STATUSES
from skiptrace.errors import InvalidTransitionError
from skiptrace.pipeline import coordinator
from skiptrace.pipeline.manager import launch_run, enqueue_run

logger = logging.getLogger('routes.runs')

bp = Blueprint('runs', __name__)


@bp.route('/api/runs', methods=['POST'])
def start_run():
    """Create a run from a list of items and enqueue it."""
    data = request.get_json(silent=True) or {}
    items = data.get('items')
    if not isinstance(items, list) or not items:
        return jsonify({'error': 'items must be a non-empty list'}), 400
    if not all(isinstance(i, dict) for i in items):
        return jsonify({'error': 'every item must be an object'}), 400

    status = launch_run(data.get('source_label', ''), items)
    return jsonify(status), 202


@bp.route('/api/runs/<run_id>')
def run_status(run_id):
    status = coordinator.get_run(run_id)
    if not status:
        return jsonify({'error': 'Run not found'}), 404
    return jsonify(status)


@bp.route('/api/runs/<run_id>/report')
def run_report(run_id):
    report = coordinator.run_report(run_id)
    if not report:
        return jsonify({'error': 'Run not found'}), 404
    return jsonify(report)


@bp.route('/api/runs/<run_id>/items')
def run_items(run_id):
    if not coordinator.get_run(run_id):
        return jsonify({'error': 'Run not found'}), 404
    status = request.args.get('status')
    if status and status not in ITEM_STATUSES:
        return jsonify({'error': f'status must be one of {ITEM_STATUSES}'}), 400
    return jsonify(coordinator.list_items(run_id, status=status))


@bp.route('/api/runs/<run_id>/pause', methods=['POST'])
def pause_run(run_id):
    data = request.get_json(silent=True) or {}
    status = coordinator.pause_run(run_id, reason=data.get('reason') or 'paused by operator')
    if not status:
        return jsonify({'error': 'Run not found'}), 404
    return jsonify(status)


@bp.route('/api/runs/<run_id>/resume', methods=['POST'])
def resume_run(run_id):
    status = coordinator.resume_run(run_id)
    if not status:
        return jsonify({'error': 'Run not found'}), 404
    if status['queued']:
        enqueue_run(run_id)
    return jsonify(status)


@bp.route('/api/runs/<run_id>/retry-failed', methods=['POST'])
def retry_failed(run_id):
    """Requeue failed items, optionally only those of one error category."""
    if not coordinator.get_run(run_id):
        return jsonify({'error': 'Run not found'}), 404
    data = request.get_json(silent=True) or {}
    moved = coordinator.retry_failed_items(run_id, error_category_filter=data.get('error_category'))
    status = coordinator.get_run(run_id)
    if moved and not status['soft_paused']:
        enqueue_run(run_id)
    return jsonify({'moved': moved, 'run': status})


@bp.route('/api/run-items/<int:item_id>/retry', methods=['POST'])
def retry_item(item_id):
    try:
        item = coordinator.retry_failed_item(item_id)
    except InvalidTransitionError as e:
        return jsonify({'error': str(e)}), 409
    if not item:
        return jsonify({'error': 'Run item not found'}), 404
    if not coordinator.is_paused(item['run_id']):
        enqueue_run(item['run_id'])
    return jsonify(item)
