"""
Catalog routes - read-only view of catalogued backups.
"""

from flask import Blueprint, current_app, jsonify, request
from datetime import timedelta

from dbkeep import get_catalog
from dbkeep.backup.catalog import STATUS_ABORTED, STATUS_COMPLETED
from dbkeep.models import utcnow


bp = Blueprint('catalog', __name__, url_prefix='/api/backups')


@bp.route('/', methods=['GET'], strict_slashes=False)
def list_backups():
    """
    Get catalogued backups with filtering and pagination.

    Query params:
        - target: Filter by target name
        - status: Filter by status (completed/aborted)
        - engine: Filter by engine (postgres/mysql/mariadb)
        - days: Only show backups from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with backup records and metadata
    """
    target = request.args.get('target')
    status = request.args.get('status', STATUS_COMPLETED)
    engine = request.args.get('engine')
    days = request.args.get('days', type=int)
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(1, min(limit, 200))
    offset = max(offset, 0)

    if status not in (STATUS_COMPLETED, STATUS_ABORTED):
        return jsonify({'error': 'Invalid status filter'}), 400

    since = utcnow() - timedelta(days=days) if days and days > 0 else None

    catalog = get_catalog(current_app)
    filters = {'target': target, 'status': status, 'engine': engine, 'since': since}
    records = catalog.list(limit=limit, offset=offset, **filters)

    return jsonify({
        'records': [record.to_dict() for record in records],
        'total': catalog.count(**filters),
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:record_id>', methods=['GET'])
def get_backup(record_id):
    """
    Get a single catalogued backup.

    Args:
        record_id: Backup record ID
    """
    record = get_catalog(current_app).get(record_id)
    if record is None:
        return jsonify({'error': f'Backup not found: {record_id}'}), 404
    return jsonify(record.to_dict())
