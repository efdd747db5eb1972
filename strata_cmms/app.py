#!/usr/bin/env python3
"""
Strata CMMS: maintenance back end for strata buildings.

HOW TO RUN:
    pip install -e .
    python3 -m strata_cmms

Then the JSON API is served at: http://localhost:5050/api

Sessions are issued by the external auth layer; every /api route except
/api/health expects ``user_id`` (and ``role`` for deletes) in the session.
"""

import os, secrets, calendar
from datetime import datetime, date, timedelta
from functools import wraps
from flask import Flask, request, jsonify, session

from . import __version__
from .app_logger import get_logger
from .compliance import (classify_subject, expiry_alerts, subject_from_asset,
                         subject_from_contractor)
from .models import ComplianceStatus, MaintenanceSchedule, WorkOrder, parse_date
from .recurrence import RecurrenceSynchronizer, occurrences, work_order_locks
from .store import EntityStore, RecordNotFound, StoreError

DB_PATH           = os.getenv("STRATA_DB_PATH", "strata_cmms.db")
SOON_WINDOW_DAYS  = int(os.getenv("STRATA_SOON_WINDOW_DAYS", "30"))
PORT              = int(os.getenv("STRATA_PORT", "5050"))
APP_VERSION       = __version__

logger = get_logger("app")

app = Flask(__name__)
app.config['DATABASE'] = DB_PATH
app.config['SOON_WINDOW_DAYS'] = SOON_WINDOW_DAYS
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=12)


def get_store():
    return EntityStore(app.config['DATABASE'])

def init_db():
    get_store().init_schema()

# ── PERSISTENT SECRET KEY (survives server restarts so sessions stay valid) ──
def _get_or_create_secret_key(store):
    try:
        key = store.get_config('secret_key')
        if key:
            return key
        key = secrets.token_hex(32)
        store.set_config('secret_key', key)
        return key
    except StoreError:
        logger.warning("Could not persist secret key, sessions will not survive restart")
        return secrets.token_hex(32)

def today():
    return date.today()

def get_synchronizer():
    return RecurrenceSynchronizer(get_store(), today=today)

# ── DECORATORS ────────────────────────────────────────────────────────────────

def handle_api_errors(f):
    """Map input and store errors onto JSON error responses"""
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except RecordNotFound as e:
            return jsonify({'success': False, 'error': 'Not found', 'details': str(e)}), 404
        except StoreError as e:
            logger.error("Store error in %s: %s", f.__name__, e)
            return jsonify({'success': False, 'error': 'Database operation failed', 'details': str(e)}), 500
        except ValueError as e:
            return jsonify({'success': False, 'error': 'Invalid input value', 'details': str(e)}), 400
        except KeyError as e:
            return jsonify({'success': False, 'error': 'Missing required field', 'details': str(e)}), 400
        except Exception as e:
            logger.exception("Unexpected error in %s", f.__name__)
            return jsonify({'success': False, 'error': 'An unexpected error occurred', 'details': str(e)}), 500
    return decorated

def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized'}), 401
        return f(*args, **kwargs)
    return decorated

def admin_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized'}), 401
        if session.get('role') != 'admin':
            return jsonify({'error': 'Admin access required'}), 403
        return f(*args, **kwargs)
    return decorated

def pick(data, columns):
    return {k: data[k] for k in columns if k in data}

def normalize_dates(fields, keys):
    """Validate date fields from a payload, storing them as ISO text."""
    for k in keys:
        if k in fields:
            d = parse_date(fields[k])
            fields[k] = d.isoformat() if d else None
    return fields

# ── HEALTH ────────────────────────────────────────────────────────────────────

@app.route('/api/health')
def health_check():
    try:
        with get_store().connect() as conn:
            conn.execute("SELECT 1").fetchone()
        db_status = "healthy"
    except StoreError:
        db_status = "unhealthy"
    return jsonify({
        'status': 'ok' if db_status == "healthy" else 'degraded',
        'version': APP_VERSION,
        'database': db_status,
        'timestamp': datetime.now().isoformat()
    })

# ── WORK ORDERS ───────────────────────────────────────────────────────────────

@app.route('/api/work-orders', methods=['GET'])
@login_required
@handle_api_errors
def get_work_orders():
    filters = {}
    if request.args.get('building_id'):
        filters['building_id'] = int(request.args['building_id'])
    if request.args.get('status'):
        filters['status'] = request.args['status']
    if request.args.get('recurring') in ('0', '1'):
        filters['is_recurring'] = int(request.args['recurring'])
    wos = get_store().collection('WorkOrder').filter(**filters)
    return jsonify({'items': wos, 'total': len(wos)})

@app.route('/api/work-orders/<int:wo_id>', methods=['GET'])
@login_required
@handle_api_errors
def get_work_order(wo_id):
    store = get_store()
    wo = store.collection('WorkOrder').get(wo_id)
    if not wo:
        return jsonify({'error': 'Not found'}), 404
    linked = store.collection('MaintenanceSchedule').filter(work_order_id=wo_id)
    return jsonify({'work_order': wo, 'schedule': linked[0] if linked else None})

@app.route('/api/work-orders', methods=['POST'])
@login_required
@handle_api_errors
def create_work_order():
    data = request.json or {}
    wo = WorkOrder.from_record(data)
    created = get_store().collection('WorkOrder').create(wo.to_fields())
    logger.info("User %s created work order %s", session['user_id'], created['id'])
    # the work order is persisted; schedule sync is advisory from here on
    result = get_synchronizer().sync(created['id'], wo)
    return jsonify({'success': True, 'id': created['id'], 'schedule_sync': result.to_dict()})

@app.route('/api/work-orders/<int:wo_id>', methods=['PUT'])
@login_required
@handle_api_errors
def update_work_order(wo_id):
    data = request.json or {}
    store = get_store()
    old = store.collection('WorkOrder').get(wo_id)
    if not old:
        return jsonify({'error': 'Not found'}), 404
    wo = WorkOrder.from_record({**old, **data})
    # schedule writes follow work-order writes in the same order
    with work_order_locks(wo_id):
        store.collection('WorkOrder').update(wo_id, wo.to_fields())
        logger.info("User %s updated work order %s", session['user_id'], wo_id)
        result = get_synchronizer().sync(wo_id, wo)
    return jsonify({'success': True, 'schedule_sync': result.to_dict()})

@app.route('/api/work-orders/<int:wo_id>', methods=['DELETE'])
@login_required
@admin_required
@handle_api_errors
def delete_work_order(wo_id):
    with work_order_locks(wo_id):
        get_store().collection('WorkOrder').delete(wo_id)
        logger.info("User %s deleted work order %s", session['user_id'], wo_id)
        result = get_synchronizer().remove(wo_id)
    return jsonify({'success': True, 'schedule_sync': result.to_dict()})

# ── MAINTENANCE SCHEDULES ─────────────────────────────────────────────────────

SCHEDULE_INPUT_FIELDS = ('building_id', 'subject', 'description', 'event_start', 'event_end',
                         'recurrence', 'contractor_id', 'assigned_to', 'never_expire', 'status')

@app.route('/api/maintenance-schedules', methods=['GET'])
@login_required
@handle_api_errors
def get_maintenance_schedules():
    filters = {}
    if request.args.get('building_id'):
        filters['building_id'] = int(request.args['building_id'])
    if request.args.get('status'):
        filters['status'] = request.args['status']
    schedules = get_store().collection('MaintenanceSchedule').filter(**filters)
    source = request.args.get('source')
    if source == 'work_order':
        schedules = [s for s in schedules if s['work_order_id'] is not None]
    elif source == 'manual':
        schedules = [s for s in schedules if s['work_order_id'] is None]
    return jsonify(schedules)

@app.route('/api/maintenance-schedules/<int:schedule_id>', methods=['GET'])
@login_required
@handle_api_errors
def get_maintenance_schedule(schedule_id):
    schedule = get_store().collection('MaintenanceSchedule').get(schedule_id)
    if not schedule:
        return jsonify({'error': 'Not found'}), 404
    return jsonify(schedule)

@app.route('/api/maintenance-schedules', methods=['POST'])
@login_required
@handle_api_errors
def create_maintenance_schedule():
    data = request.json or {}
    if data.get('work_order_id') is not None:
        return jsonify({'success': False, 'error': 'work_order_id is managed by work orders'}), 400
    # round-trip through the model to validate dates and recurrence
    schedule = MaintenanceSchedule.from_record({**pick(data, SCHEDULE_INPUT_FIELDS), 'id': None})
    if not schedule.event_start:
        raise KeyError('event_start')
    created = get_store().collection('MaintenanceSchedule').create(schedule.to_fields())
    logger.info("User %s created manual schedule %s", session['user_id'], created['id'])
    return jsonify({'success': True, 'id': created['id']})

@app.route('/api/maintenance-schedules/<int:schedule_id>', methods=['PUT'])
@login_required
@handle_api_errors
def update_maintenance_schedule(schedule_id):
    data = request.json or {}
    schedules = get_store().collection('MaintenanceSchedule')
    old = schedules.get(schedule_id)
    if not old:
        return jsonify({'error': 'Not found'}), 404
    merged = MaintenanceSchedule.from_record({**old, **pick(data, SCHEDULE_INPUT_FIELDS)})
    fields = merged.to_fields()
    fields.pop('work_order_id')
    schedules.update(schedule_id, fields)
    if old['work_order_id'] is not None:
        logger.info("Schedule %s edited directly; the next save of work order %s overwrites it",
                    schedule_id, old['work_order_id'])
    return jsonify({'success': True})

@app.route('/api/maintenance-schedules/<int:schedule_id>', methods=['DELETE'])
@login_required
@admin_required
@handle_api_errors
def delete_maintenance_schedule(schedule_id):
    get_store().collection('MaintenanceSchedule').delete(schedule_id)
    logger.info("User %s deleted schedule %s", session['user_id'], schedule_id)
    return jsonify({'success': True})

# ── COMPLIANCE SUBJECTS (ASSETS / CONTRACTORS) ────────────────────────────────

ASSET_INPUT_FIELDS = ('building_id', 'name', 'category', 'location', 'status', 'next_service_date')
CONTRACTOR_INPUT_FIELDS = ('company_name', 'contact_name', 'email', 'phone', 'status',
                           'license_expiry_date', 'insurance_expiry', 'work_cover_expiry_date',
                           'public_liability_expiry_date')
ASSET_DATE_FIELDS = ('next_service_date',)
CONTRACTOR_DATE_FIELDS = ('license_expiry_date', 'insurance_expiry', 'work_cover_expiry_date',
                          'public_liability_expiry_date')

# collection -> (input fields, date fields, required field, subject builder)
SUBJECTS = {
    'Asset': (ASSET_INPUT_FIELDS, ASSET_DATE_FIELDS, 'name', subject_from_asset),
    'Contractor': (CONTRACTOR_INPUT_FIELDS, CONTRACTOR_DATE_FIELDS, 'company_name', subject_from_contractor),
}

def with_compliance(collection, record, now):
    to_subject = SUBJECTS[collection][3]
    status = classify_subject(to_subject(record), now, app.config['SOON_WINDOW_DAYS'])
    return {**record, 'compliance_status': status.value}

def list_subjects(collection):
    filters = {}
    if collection == 'Asset' and request.args.get('building_id'):
        filters['building_id'] = int(request.args['building_id'])
    if request.args.get('status'):
        filters['status'] = request.args['status']
    now = today()
    items = [with_compliance(collection, r, now) for r in get_store().collection(collection).filter(**filters)]
    wanted = request.args.get('compliance')
    if wanted:
        wanted = ComplianceStatus(wanted).value
        items = [r for r in items if r['compliance_status'] == wanted]
    return jsonify(items)

def get_subject(collection, record_id):
    record = get_store().collection(collection).get(record_id)
    if not record:
        return jsonify({'error': 'Not found'}), 404
    return jsonify(with_compliance(collection, record, today()))

def create_subject(collection):
    inputs, date_fields, required, _ = SUBJECTS[collection]
    data = request.json or {}
    if not data.get(required):
        raise KeyError(required)
    fields = normalize_dates(pick(data, inputs), date_fields)
    created = get_store().collection(collection).create(fields)
    logger.info("User %s created %s %s", session['user_id'], collection, created['id'])
    return jsonify({'success': True, 'id': created['id']})

def update_subject(collection, record_id):
    inputs, date_fields, _, _ = SUBJECTS[collection]
    fields = normalize_dates(pick(request.json or {}, inputs), date_fields)
    if not fields:
        return jsonify({'success': False, 'error': 'Nothing to update'}), 400
    get_store().collection(collection).update(record_id, fields)
    return jsonify({'success': True})

def delete_subject(collection, record_id):
    get_store().collection(collection).delete(record_id)
    logger.info("User %s deleted %s %s", session['user_id'], collection, record_id)
    return jsonify({'success': True})

@app.route('/api/assets', methods=['GET'])
@login_required
@handle_api_errors
def get_assets():
    return list_subjects('Asset')

@app.route('/api/assets/<int:asset_id>', methods=['GET'])
@login_required
@handle_api_errors
def get_asset(asset_id):
    return get_subject('Asset', asset_id)

@app.route('/api/assets', methods=['POST'])
@login_required
@handle_api_errors
def create_asset():
    return create_subject('Asset')

@app.route('/api/assets/<int:asset_id>', methods=['PUT'])
@login_required
@handle_api_errors
def update_asset(asset_id):
    return update_subject('Asset', asset_id)

@app.route('/api/assets/<int:asset_id>', methods=['DELETE'])
@login_required
@admin_required
@handle_api_errors
def delete_asset(asset_id):
    return delete_subject('Asset', asset_id)

@app.route('/api/contractors', methods=['GET'])
@login_required
@handle_api_errors
def get_contractors():
    return list_subjects('Contractor')

@app.route('/api/contractors/<int:contractor_id>', methods=['GET'])
@login_required
@handle_api_errors
def get_contractor(contractor_id):
    return get_subject('Contractor', contractor_id)

@app.route('/api/contractors', methods=['POST'])
@login_required
@handle_api_errors
def create_contractor():
    return create_subject('Contractor')

@app.route('/api/contractors/<int:contractor_id>', methods=['PUT'])
@login_required
@handle_api_errors
def update_contractor(contractor_id):
    return update_subject('Contractor', contractor_id)

@app.route('/api/contractors/<int:contractor_id>', methods=['DELETE'])
@login_required
@admin_required
@handle_api_errors
def delete_contractor(contractor_id):
    return delete_subject('Contractor', contractor_id)

# ── COMPLIANCE REPORTS ────────────────────────────────────────────────────────

@app.route('/api/compliance/summary')
@login_required
@handle_api_errors
def compliance_summary():
    now = today()
    summary = {}
    for collection, key in (('Asset', 'assets'), ('Contractor', 'contractors')):
        counts = {s.value: 0 for s in ComplianceStatus}
        for record in get_store().collection(collection).list():
            counts[with_compliance(collection, record, now)['compliance_status']] += 1
        summary[key] = counts
    return jsonify({'as_of': now.isoformat(), 'soon_window_days': app.config['SOON_WINDOW_DAYS'],
                    **summary})

@app.route('/api/compliance/reminders')
@login_required
@handle_api_errors
def compliance_reminders():
    now = today()
    reminders = []
    # only active contractors get reminders; every asset does
    for collection, filters in (('Contractor', {'status': 'active'}), ('Asset', {})):
        to_subject = SUBJECTS[collection][3]
        for record in get_store().collection(collection).filter(**filters):
            subject = to_subject(record)
            alerts = expiry_alerts(subject, now)
            if alerts:
                reminders.append({'kind': subject.kind, 'id': subject.id, 'name': subject.name,
                                  'alerts': [a.to_dict() for a in alerts]})
    return jsonify({'as_of': now.isoformat(), 'reminders': reminders})

# ── CALENDAR ──────────────────────────────────────────────────────────────────

@app.route('/api/calendar')
@login_required
@handle_api_errors
def get_calendar():
    month = request.args.get('month', today().strftime('%Y-%m'))
    y, m = int(month[:4]), int(month[5:7])
    start = date(y, m, 1)
    end = date(y, m, calendar.monthrange(y, m)[1])
    store = get_store()
    wos = [w for w in store.collection('WorkOrder').list()
           if w['due_date'] and start.isoformat() <= w['due_date'] <= end.isoformat()
           and w['status'] != 'cancelled']
    events = []
    for record in store.collection('MaintenanceSchedule').filter(status='active'):
        schedule = MaintenanceSchedule.from_record(record)
        for when in occurrences(schedule, start, end):
            events.append({'schedule_id': schedule.id, 'subject': schedule.subject,
                           'date': when.isoformat(), 'work_order_id': schedule.work_order_id})
    events.sort(key=lambda e: e['date'])
    return jsonify({'work_orders': wos, 'maintenance_schedules': events, 'month': month})


def main():
    logger.info("Strata CMMS %s starting", APP_VERSION)
    init_db()
    app.secret_key = _get_or_create_secret_key(get_store())
    logger.info("Database ready at %s, serving on port %s", app.config['DATABASE'], PORT)
    app.run(debug=False, port=PORT, host='0.0.0.0')


if __name__ == '__main__':
    main()
