#!/usr/bin/env python3
"""
DevOps Cleaner - Web Interface

A Flask JSON API to browse compartments, start devops project cleanups in
the background and follow their progress.
"""

import logging
import secrets
import threading

from flask import Flask, jsonify, request

import oci_context
from devops_cleaner import DevOpsCleaner, compile_name_filter
from devops_utils import DevOpsApi, is_gone

app = Flask(__name__)
app.secret_key = secrets.token_hex(32)

logger = logging.getLogger(__name__)

# Global dictionaries to track active cleanup jobs
cleanup_jobs = {}  # {compartment_id: cleaner_instance}
cleanup_threads = {}  # {compartment_id: thread}


def get_api():
    """DevOpsApi for the credentials the server runs with, or None."""
    ctx = oci_context.create_context()
    if ctx is None:
        return None
    return DevOpsApi(ctx)


@app.route('/api/compartments', methods=['GET'])
def list_compartments():
    """List all compartments in the tenancy"""
    try:
        api = get_api()
        if api is None:
            return jsonify({'error': 'OCI configuration not found'}), 500

        tenancy_id = api.ctx.tenancy_id
        tenancy = api.get_tenancy(tenancy_id)

        compartments = [{
            'id': tenancy_id,
            'name': tenancy.name + ' (root)',
            'description': tenancy.description or '',
            'state': 'ACTIVE',
            'is_root': True
        }]
        for comp in api.list_compartments(tenancy_id):
            if comp.lifecycle_state in ['ACTIVE', 'DELETING']:
                compartments.append({
                    'id': comp.id,
                    'name': comp.name,
                    'description': comp.description or '',
                    'state': comp.lifecycle_state,
                    'is_root': False
                })

        return jsonify({
            'compartments': compartments,
            'tenancy_name': tenancy.name
        })

    except Exception as e:
        logger.error(f"Error listing compartments: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/projects/<compartment_id>', methods=['GET'])
def list_projects(compartment_id):
    """List the devops projects a cleanup of this compartment would select"""
    try:
        api = get_api()
        if api is None:
            return jsonify({'error': 'OCI configuration not found'}), 500
        name_filter = compile_name_filter(request.args.get('project_name_regexp'))
        projects = [
            {'id': p.id, 'name': p.name, 'state': p.lifecycle_state}
            for p in api.list_projects(compartment_id)
            if not is_gone(p) and name_filter.search(p.name)
        ]
        return jsonify({'projects': projects, 'count': len(projects)})
    except Exception as e:
        logger.error(f"Error listing projects: {e}")
        return jsonify({'error': str(e)}), 500


def run_cleanup_background(cleaner):
    """Background thread function to run cleanup"""
    try:
        cleaner.cleanup()
    except Exception as e:
        logger.error(f"Error in background cleanup: {e}")
        cleaner.progress['status'] = 'error'
        cleaner.progress['phase'] = f'Error: {str(e)}'


@app.route('/api/cleanup', methods=['POST'])
def start_cleanup():
    """Start a cleanup in the background"""
    try:
        data = request.get_json(silent=True) or {}
        compartment_id = data.get('compartment_id')
        name_regexp = data.get('project_name_regexp') or None

        if not compartment_id:
            return jsonify({'error': 'compartment_id is required'}), 400
        try:
            compile_name_filter(name_regexp)
        except Exception as e:
            return jsonify({'error': f'Invalid project_name_regexp: {e}'}), 400

        running = cleanup_threads.get(compartment_id)
        if running is not None and running.is_alive():
            return jsonify({'error': 'A cleanup is already running for this compartment'}), 409

        api = get_api()
        if api is None:
            return jsonify({'error': 'OCI configuration not found'}), 500

        cleaner = DevOpsCleaner(api, name_regexp=name_regexp, compartment_id=compartment_id)
        cleanup_jobs[compartment_id] = cleaner

        thread = threading.Thread(target=run_cleanup_background, args=(cleaner,))
        thread.daemon = True
        cleanup_threads[compartment_id] = thread
        thread.start()

        return jsonify({
            'success': True,
            'message': 'Cleanup started',
            'compartment_id': compartment_id
        })

    except Exception as e:
        logger.error(f"Error starting cleanup: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/cleanup/progress/<compartment_id>', methods=['GET'])
def get_cleanup_progress(compartment_id):
    """Get cleanup progress for a compartment"""
    if compartment_id not in cleanup_jobs:
        return jsonify({'error': 'No cleanup job found'}), 404

    cleaner = cleanup_jobs[compartment_id]

    with cleaner._lock:
        progress = dict(cleaner.progress)
        resources_status = dict(progress.pop('resources_status'))
        progress.pop('processed_ids', None)
        errors = list(cleaner.report.errors)
        deleted_count = sum(cleaner.deleted_count.values())
        failed_count = sum(cleaner.failed_count.values())

    progress['resources'] = [{'id': res_id, **res_info} for res_id, res_info in resources_status.items()]
    progress['deleted_count'] = deleted_count
    progress['failed_count'] = failed_count
    progress['errors'] = [
        {'type': kind, 'id': resource_id, 'error': error} for kind, resource_id, error in errors
    ]

    return jsonify(progress)


if __name__ == '__main__':
    logging.basicConfig(
        format='%(asctime)s [%(levelname)s] %(message)s',
        level=logging.INFO
    )
    print("=" * 80)
    print("DevOps Cleaner - Web Interface")
    print("=" * 80)
    print("\nStarting web server on http://localhost:8080")
    print("\nPress Ctrl+C to stop the server")
    print("\nNOTE: Server is only accessible from this machine (localhost)")
    print("=" * 80)

    app.run(debug=True, host='127.0.0.1', port=8080)
