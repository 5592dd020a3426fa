"""
Import routes — launch PhantomBuster imports and poll their status.
"""
import logging
from flask import Blueprint, request, jsonify

from leadcrm.jobs.manager import get_import_manager
from leadcrm.jobs.tracker import JobNotFound

logger = logging.getLogger('routes.imports')

bp = Blueprint('imports', __name__)


@bp.route('/api/import', methods=['POST'])
def start_import():
    """Launch an import. Returns 202 with the queued job."""
    data = request.get_json(silent=True) or {}
    source = data.get('source')
    automation_id = data.get('automation_id') or data.get('automationId')
    parameters = data.get('parameters') or data.get('arguments') or {}

    if not isinstance(parameters, dict):
        return jsonify({'error': "'parameters' must be an object"}), 400

    try:
        job = get_import_manager().launch_import(
            source=source, automation_id=automation_id, parameters=parameters,
        )
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.error("Failed to launch import", exc_info=True)
        return jsonify({'error': str(e)}), 500

    body = job.to_dict()
    body['jobId'] = job.id
    return jsonify(body), 202


@bp.route('/api/import')
def list_imports():
    """Recent import jobs, newest first."""
    limit = request.args.get('limit', 20, type=int)
    return jsonify(get_import_manager().list_jobs(limit=max(1, min(limit, 100))))


@bp.route('/api/import/status/<job_id>')
def import_status(job_id):
    try:
        status = get_import_manager().get_status(job_id)
    except JobNotFound as e:
        return jsonify({'error': str(e)}), 404
    return jsonify(status)


@bp.route('/api/import/<job_id>/cancel', methods=['POST'])
def cancel_import(job_id):
    try:
        job = get_import_manager().cancel(job_id)
    except JobNotFound as e:
        return jsonify({'error': str(e)}), 404
    return jsonify(job.to_dict())
