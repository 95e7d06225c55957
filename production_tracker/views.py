import io, csv, json
from datetime import datetime
from flask import Blueprint, Response, abort, render_template, request, redirect, url_for, flash, jsonify, make_response, current_app
from .errors import ErrorCode, TrackingStoreError
from .states import Stage

bp = Blueprint('main', __name__)
api = Blueprint('api', __name__, url_prefix='/api/production-tracking')


def _tracker():
    return current_app.extensions['production_tracker']


def _operator():
    return (request.cookies.get('operator') or '').strip() or None


def _employee_id(body):
    return (body.get('employeeId') or request.headers.get('X-Employee-Id') or _operator())


def _body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _respond(result):
    return jsonify(result.to_dict()), result.http_status


def format_sse(payload):
    return f"data: {json.dumps(payload)}\n\n"


@bp.app_errorhandler(TrackingStoreError)
def store_unavailable(error):
    current_app.logger.error(f"Tracking store error: {error}")
    return jsonify({'success': False, 'errorCode': ErrorCode.INTERNAL_ERROR.value, 'message': str(error)}), 500


@bp.app_template_filter('dt')
def format_dt(value):
    if not value:
        return ''
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return value.strftime('%Y-%m-%d %H:%M:%S')


# --- floor pages ---

@bp.route('/')
def index():
    batch_id = (request.args.get('batch_id') or '').strip() or None
    totals = _tracker().stage_totals(batch_id)
    groups = _tracker().get_tracking_by_batch(batch_id) if batch_id else None
    return render_template('index.html', stages=[s.value for s in Stage], totals=totals,
                           groups=groups, batch_id=batch_id, unit_count=sum(totals.values()))


@bp.route('/scan', methods=['GET', 'POST'])
def scan():
    if request.method == 'POST':
        code = request.form.get('code', '').strip()
        if not code:
            flash('No code scanned', 'warning')
            return redirect(url_for('main.scan'))
        result = _tracker().advance_serial(code, _operator())
        flash(result.message, 'success' if result.success else 'danger')
        if _tracker().get_unit(code) is None:
            return redirect(url_for('main.scan'))
        return redirect(url_for('main.unit_detail', serial=code))
    return render_template('scan.html')


@bp.route('/units/<serial>', methods=['GET', 'POST'])
def unit_detail(serial):
    tracker = _tracker()
    unit = tracker.get_unit(serial)
    if unit is None:
        abort(404)
    if request.method == 'POST':
        action = request.form.get('action')
        operator = (request.form.get('operator', '') or '').strip() or _operator()
        note = request.form.get('note', '').strip() or None
        if action == 'advance':
            result = tracker.advance_serial(serial, operator)
        elif action == 'approve':
            result = tracker.approve_pending([serial], operator)
        elif action == 'cancel':
            result = tracker.cancel_pending([serial], note, operator)
        elif action == 'approve_tested':
            result = tracker.approve_tested([serial], note, operator)
        elif action == 'reject':
            result = tracker.reject_for_qc([serial], request.form.get('reason'), note, operator)
        elif action == 'firmware_failed':
            result = tracker.report_firmware_failure(serial, note, operator)
        else:
            flash('Unknown action', 'warning')
            return redirect(url_for('main.unit_detail', serial=serial))
        if result.success:
            flash(result.message, 'success')
        else:
            reasons = '; '.join(e.reason for e in result.errors)
            flash(f'{result.message}' + (f' ({reasons})' if reasons else ''), 'danger')
        return redirect(url_for('main.unit_detail', serial=serial))
    return render_template('unit_detail.html', unit=unit, logs=unit.state_logs or [])


@bp.route('/admin')
def admin():
    return render_template('admin.html', totals=_tracker().stage_totals())


@bp.route('/admin/import', methods=['POST'])
def admin_import():
    batch_id = (request.form.get('batch_id') or '').strip()
    f = request.files.get('csv')
    if not batch_id or not f:
        flash('Enter a batch id and upload a CSV with header "serial"', 'warning')
        return redirect(url_for('main.admin'))
    text = f.read().decode('utf-8', errors='ignore')
    reader = csv.DictReader(io.StringIO(text))
    serials = [s for s in ((row.get('serial') or '').strip() for row in reader) if s]
    result = _tracker().schedule_units(batch_id, serials, _operator())
    flash(result.message, 'success' if result.success else 'danger')
    return redirect(url_for('main.admin'))


@bp.route('/admin/export')
def admin_export():
    batch_id = (request.args.get('batch_id') or '').strip()
    if not batch_id:
        flash('Batch id required for export', 'warning')
        return redirect(url_for('main.admin'))
    si = io.StringIO()
    w = csv.writer(si)
    w.writerow(['serial', 'stage', 'status', 'stage started', 'last employee', 'note', 'updated'])
    for units in _tracker().get_tracking_by_batch(batch_id).values():
        for u in units:
            last = u['state_logs'][-1] if u['state_logs'] else {}
            w.writerow([u['device_serial'], u['stage'], u['status'], last.get('started_at') or '',
                        last.get('employee_id') or '', last.get('note') or '', u['updated_at'] or ''])
    output = make_response(si.getvalue())
    output.headers["Content-Disposition"] = f"attachment; filename=tracking_{batch_id}.csv"
    output.headers["Content-type"] = "text/csv"
    return output


@bp.route('/set-operator', methods=['POST'])
def set_operator():
    resp = make_response(redirect(request.referrer or url_for('main.index')))
    operator = (request.form.get('operator') or '').strip()
    resp.set_cookie('operator', operator, max_age=60*60*24*365)
    return resp


@bp.route('/events')
def events():
    tracker = _tracker()
    keepalive = current_app.config['SSE_KEEPALIVE_SECONDS']
    channel = tracker.subscribe_to_updates()

    def stream():
        try:
            yield format_sse({'type': 'connected', 'message': 'Connected to SSE'})
            while not channel.closed:
                event = channel.get(timeout=keepalive)
                if event is None:
                    yield ': keep-alive\n\n'
                else:
                    yield format_sse(event.to_dict())
        finally:
            tracker.unsubscribe(channel)

    return Response(stream(), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'})


# --- JSON API ---

@api.route('/production-batch/<batch_id>')
def tracking_by_batch(batch_id):
    return jsonify({'success': True, 'data': _tracker().get_tracking_by_batch(batch_id)})


@api.route('/units/<serial>')
def unit_info(serial):
    unit = _tracker().get_unit(serial)
    if unit is None:
        return jsonify({'success': False, 'errorCode': 'NOT_FOUND', 'message': f'Serial {serial} not found'}), 404
    return jsonify({'success': True, 'data': unit.to_dict()})


@api.route('/units/<serial>', methods=['DELETE'])
def unit_delete(serial):
    return _respond(_tracker().delete_unit(serial))


@api.route('/info-need-upload-firmware/<batch_id>')
@api.route('/info-need-upload-firmware/tracking/<batch_id>')
def need_firmware(batch_id):
    return jsonify({'success': True, 'data': _tracker().get_serials_needing_firmware(batch_id)})


@api.route('/approve-production-serial', methods=['POST'])
def approve_production_serial():
    body = _body()
    return _respond(_tracker().approve_pending(body.get('device_serials'), _employee_id(body)))


@api.route('/cancel-production-serial', methods=['PATCH'])
def cancel_production_serial():
    body = _body()
    return _respond(_tracker().cancel_pending(body.get('device_serials'), body.get('note'), _employee_id(body)))


@api.route('/reject-qc', methods=['PATCH'])
def reject_qc():
    body = _body()
    return _respond(_tracker().reject_for_qc(
        body.get('device_serials'), body.get('reason'), body.get('note'), _employee_id(body)))


@api.route('/approve-tested-serial', methods=['PATCH'])
def approve_tested_serial():
    body = _body()
    return _respond(_tracker().approve_tested(body.get('device_serials'), body.get('note'), _employee_id(body)))


@api.route('/update-serial', methods=['PATCH'])
def update_serial():
    body = _body()
    return _respond(_tracker().advance_serial(body.get('device_serial'), _employee_id(body)))


@api.route('/firmware-failed', methods=['PATCH'])
def firmware_failed():
    body = _body()
    return _respond(_tracker().report_firmware_failure(
        body.get('device_serial'), body.get('note'), _employee_id(body)))


@api.route('/schedule', methods=['POST'])
def schedule():
    body = _body()
    batch_id = body.get('production_batch_id')
    if not batch_id:
        return jsonify({'success': False, 'errorCode': 'BAD_REQUEST',
                        'message': 'production_batch_id is required'}), 400
    return _respond(_tracker().schedule_units(batch_id, body.get('device_serials'), _employee_id(body)))
