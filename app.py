"""
Silo Monitor - Aggregation Service
Flask Backend Server with SQLAlchemy ORM

Receives readings from storage-unit edge agents, keeps their history, owns the
thresholds configuration and serves per-device trend analytics.
"""

from flask import Flask, request, jsonify
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import List, Optional
import math
import os

from predictor import analyze_window
from risk_scorer import HealthClass, Reading, Sample, build_reading
from silo_errors import ConfigValidationError, InsufficientDataError
from thresholds import ConfigStore

# ============================================================================
# APPLICATION CONFIGURATION
# ============================================================================

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'silo-dev-secret-key-change-in-production')
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///silo_data.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SQLALCHEMY_ECHO'] = False  # Set True for SQL debugging
app.config['API_KEY'] = os.environ.get('API_KEY', 'demo123')
app.config['CONFIG_PATH'] = os.environ.get(
    'CONFIG_PATH', os.path.join(os.path.dirname(os.path.abspath(__file__)), 'config.json')
)

db = SQLAlchemy(app)

# Single owner of the thresholds document; evaluations read config_store.current once
config_store = ConfigStore(app.config['CONFIG_PATH'])

# ============================================================================
# STATUS CONSTANTS
# ============================================================================

ONLINE_WINDOW = timedelta(minutes=5)
RECENT_WINDOW = timedelta(hours=1)
DEFAULT_DATA_LIMIT = 1000
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_HISTORY_HOURS = 24
DEFAULT_TRENDS_LIMIT = 500


def utc_now() -> datetime:
    """Naive UTC timestamp, as stored by SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# DATABASE MODELS
# ============================================================================

class SensorReading(db.Model):
    """
    One reading from a storage-unit edge agent, with everything derived from it.
    """
    __tablename__ = 'sensor_data'

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.String(50), nullable=False, index=True)
    timestamp = db.Column(db.DateTime, nullable=False, index=True, default=utc_now)

    # Raw sample
    temperature = db.Column(db.Float, nullable=False)
    humidity = db.Column(db.Float, nullable=False)
    gas_level = db.Column(db.Float, default=0.0)

    # Derived
    spoilage_risk = db.Column(db.Float, default=0.0)
    health_class = db.Column(db.String(20), default='GOOD', index=True)
    dew_point = db.Column(db.Float, nullable=True)
    absolute_humidity = db.Column(db.Float, nullable=True)
    vapor_pressure_deficit = db.Column(db.Float, nullable=True)
    equilibrium_moisture_content = db.Column(db.Float, nullable=True)

    # Edge-side analytics snapshot (audit/display only)
    trend_analysis = db.Column(db.String(30), default='INSUFFICIENT_DATA')
    prediction = db.Column(db.Text, default='NEED_MORE_DATA')

    # Link info
    rssi = db.Column(db.Integer, nullable=True)
    ip = db.Column(db.String(45), nullable=True)

    @classmethod
    def from_reading(cls, reading: Reading) -> 'SensorReading':
        return cls(
            device_id=reading.device_id,
            timestamp=reading.timestamp,
            temperature=reading.temperature,
            humidity=reading.humidity,
            gas_level=reading.gas_level,
            spoilage_risk=reading.spoilage_risk,
            health_class=reading.health_class.value,
            dew_point=reading.dew_point,
            absolute_humidity=reading.absolute_humidity,
            vapor_pressure_deficit=reading.vapor_pressure_deficit,
            equilibrium_moisture_content=reading.equilibrium_moisture_content,
            trend_analysis=reading.trend_analysis,
            prediction=reading.prediction,
            rssi=reading.rssi,
            ip=reading.ip
        )

    def to_reading(self) -> Reading:
        return Reading(
            device_id=self.device_id,
            timestamp=self.timestamp,
            temperature=self.temperature,
            humidity=self.humidity,
            gas_level=self.gas_level or 0.0,
            spoilage_risk=self.spoilage_risk or 0.0,
            health_class=HealthClass(self.health_class or 'GOOD'),
            dew_point=self.dew_point,
            absolute_humidity=self.absolute_humidity,
            vapor_pressure_deficit=self.vapor_pressure_deficit,
            equilibrium_moisture_content=self.equilibrium_moisture_content,
            trend_analysis=self.trend_analysis or 'INSUFFICIENT_DATA',
            prediction=self.prediction or 'NEED_MORE_DATA',
            rssi=self.rssi,
            ip=self.ip
        )

    def to_dict(self):
        data = self.to_reading().to_dict()
        data['id'] = self.id
        return data


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def parse_iso_timestamp(timestamp_str: str) -> Optional[datetime]:
    """Parse ISO 8601 timestamp string to a naive UTC datetime."""
    if not timestamp_str or not isinstance(timestamp_str, str):
        return None
    try:
        # Handle 'Z' suffix for UTC
        if timestamp_str.endswith('Z'):
            timestamp_str = timestamp_str[:-1] + '+00:00'
        parsed = datetime.fromisoformat(timestamp_str)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_float(data: dict, *keys) -> Optional[float]:
    """First of keys present in data, as a float. Raises ValueError if not numeric."""
    for key in keys:
        if data.get(key) is not None:
            value = data[key]
            if isinstance(value, bool):
                raise ValueError(f"{key} must be a number")
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be a number")
            if not math.isfinite(number):
                raise ValueError(f"{key} must be a number")
            return number
    return None


def query_history(device_id: str, limit: Optional[int] = None, hours: Optional[float] = None) -> List[Reading]:
    """History source: a device's readings, oldest first."""
    query = SensorReading.query.filter_by(device_id=device_id)
    if hours is not None:
        query = query.filter(SensorReading.timestamp >= utc_now() - timedelta(hours=hours))
    query = query.order_by(SensorReading.timestamp.desc(), SensorReading.id.desc())
    if limit is not None:
        query = query.limit(limit)
    rows = query.all()
    rows.reverse()
    return [row.to_reading() for row in rows]


def device_status(last_seen: datetime, now: datetime) -> str:
    if last_seen >= now - ONLINE_WINDOW:
        return 'online'
    if last_seen >= now - RECENT_WINDOW:
        return 'recent'
    return 'offline'


def require_api_key(view):
    """Reject requests without the shared device API key."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        if request.headers.get('x-api-key') != app.config['API_KEY']:
            return jsonify({'success': False, 'error': 'Invalid API key'}), 401
        return view(*args, **kwargs)
    return wrapper


def int_arg(name: str, default: int) -> int:
    return request.args.get(name, default, type=int)


def float_arg(name: str, default: float) -> float:
    return request.args.get(name, default, type=float)


# ============================================================================
# API ROUTES - INGESTION
# ============================================================================

@app.route('/api/data', methods=['POST'])
@require_api_key
def ingest_reading():
    """
    Reading ingestion endpoint.
    Accepts a JSON reading from an edge agent and re-derives the risk fields
    with the current configuration.

    Returns:
        201: Successfully stored
        400: Invalid payload
        401: Missing or wrong API key
        500: Server error
    """
    data = request.get_json(silent=True)

    if not data or not isinstance(data, dict):
        return jsonify({
            'success': False,
            'error': 'No JSON payload received'
        }), 400

    device_id = data.get('deviceId') or data.get('device_id')
    missing = [name for name, present in (
        ('deviceId', device_id),
        ('temperature', data.get('temperature') is not None),
        ('humidity', data.get('humidity') is not None),
    ) if not present]
    if missing:
        return jsonify({
            'success': False,
            'error': f'Missing required fields: {", ".join(missing)}'
        }), 400

    try:
        sample = Sample(
            temperature=parse_float(data, 'temperature'),
            humidity=parse_float(data, 'humidity'),
            gas_level=parse_float(data, 'gasLevel', 'mq_value') or 0.0
        )
        rssi = parse_float(data, 'rssi')
    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    timestamp = utc_now()
    if data.get('timestamp'):
        timestamp = parse_iso_timestamp(data['timestamp'])
        if not timestamp:
            return jsonify({
                'success': False,
                'error': 'Invalid timestamp format. Use ISO 8601 (e.g., 2026-01-16T14:30:00Z)'
            }), 400

    config = config_store.current
    reading = build_reading(
        str(device_id), sample, config.thresholds, timestamp=timestamp,
        trend_analysis=data.get('trendAnalysis') or 'INSUFFICIENT_DATA',
        prediction=data.get('prediction') or 'NEED_MORE_DATA',
        rssi=int(rssi) if rssi is not None else None,
        ip=data.get('ip') or request.remote_addr
    )

    try:
        row = SensorReading.from_reading(reading)
        db.session.add(row)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Reading ingestion error: {str(e)}")
        return jsonify({
            'success': False,
            'error': 'Database error'
        }), 500

    app.logger.info(
        f"{reading.device_id}: {reading.temperature}°C, {reading.humidity}%, "
        f"Risk: {reading.spoilage_risk:.1f}% [{reading.health_class.value}]"
    )

    return jsonify({
        'success': True,
        'id': row.id,
        'message': 'Data received successfully',
        'data': {
            'spoilageRisk': reading.spoilage_risk,
            'healthClass': reading.health_class.value,
            'configVersion': config.version
        }
    }), 201


# ============================================================================
# API ROUTES - DATA RETRIEVAL
# ============================================================================

@app.route('/api/data', methods=['GET'])
def get_data():
    """All readings, newest first, optionally for one device."""
    device_id = request.args.get('deviceId')
    limit = int_arg('limit', DEFAULT_DATA_LIMIT)

    query = SensorReading.query
    if device_id:
        query = query.filter_by(device_id=device_id)
    rows = query.order_by(SensorReading.timestamp.desc(), SensorReading.id.desc()).limit(limit).all()
    return jsonify([r.to_dict() for r in rows])


@app.route('/api/latest', methods=['GET'])
def get_latest():
    """Latest reading for every device."""
    latest_ids = db.select(db.func.max(SensorReading.id)).group_by(SensorReading.device_id)
    rows = SensorReading.query.filter(SensorReading.id.in_(latest_ids))\
        .order_by(SensorReading.device_id).all()
    return jsonify([r.to_dict() for r in rows])


@app.route('/api/devices', methods=['GET'])
def get_devices():
    """Device list with first/last seen, reading count and status."""
    rows = db.session.query(
        SensorReading.device_id,
        db.func.min(SensorReading.timestamp),
        db.func.max(SensorReading.timestamp),
        db.func.count(SensorReading.id)
    ).group_by(SensorReading.device_id)\
        .order_by(db.func.max(SensorReading.timestamp).desc()).all()

    now = utc_now()
    return jsonify([{
        'deviceId': device_id,
        'firstSeen': first_seen.isoformat(),
        'lastSeen': last_seen.isoformat(),
        'readingCount': count,
        'status': device_status(last_seen, now)
    } for device_id, first_seen, last_seen, count in rows])


@app.route('/api/history/<device_id>', methods=['GET'])
def get_history(device_id):
    """Recent history of one device, oldest first for charting."""
    readings = query_history(
        device_id,
        limit=int_arg('limit', DEFAULT_HISTORY_LIMIT),
        hours=float_arg('hours', DEFAULT_HISTORY_HOURS)
    )
    return jsonify([r.to_dict() for r in readings])


@app.route('/api/trends/<device_id>', methods=['GET'])
def get_trends(device_id):
    """
    Trend, prediction and recommendation analytics for one device.
    Evaluates an immutable snapshot of the device's readings in the last
    `hours`, capped at the newest `limit`.
    """
    config = config_store.current
    readings = query_history(
        device_id,
        limit=int_arg('limit', DEFAULT_TRENDS_LIMIT),
        hours=float_arg('hours', DEFAULT_HISTORY_HOURS)
    )

    try:
        analytics = analyze_window(readings, config)
    except InsufficientDataError as e:
        return jsonify({
            'message': e.message,
            'status': e.status
        })

    result = analytics.to_dict()
    result['deviceId'] = device_id
    result['sampleCount'] = len(readings)
    result['configVersion'] = config.version
    return jsonify(result)


@app.route('/api/stats', methods=['GET'])
def get_stats():
    """System-wide counters."""
    now = utc_now()
    latest = db.session.query(db.func.max(SensorReading.timestamp)).scalar()
    active_devices = db.session.query(db.func.count(db.distinct(SensorReading.device_id)))\
        .filter(SensorReading.timestamp >= now - ONLINE_WINDOW).scalar()
    critical = SensorReading.query\
        .filter(SensorReading.health_class == HealthClass.CRITICAL.value)\
        .filter(SensorReading.timestamp >= now - RECENT_WINDOW).count()

    return jsonify({
        'totalReadings': SensorReading.query.count(),
        'activeDevices': active_devices,
        'latestReading': latest.isoformat() if latest else None,
        'criticalAlerts': critical
    })


# ============================================================================
# API ROUTES - CONFIGURATION
# ============================================================================

@app.route('/api/config', methods=['GET'])
def get_config():
    """Current thresholds configuration document."""
    return jsonify(config_store.current.to_dict())


@app.route('/api/config', methods=['PUT'])
def update_config():
    """
    Deep-merge a partial (or full) configuration update.
    The merged document is rejected as a whole if any invariant fails.
    """
    updates = request.get_json(silent=True)
    if updates is None:
        return jsonify({'success': False, 'error': 'No JSON payload received'}), 400

    try:
        config = config_store.publish(updates)
    except ConfigValidationError as e:
        return jsonify({
            'success': False,
            'error': 'Invalid configuration',
            'details': e.errors
        }), 400
    except OSError as e:
        app.logger.error(f"Config save error: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to save configuration'}), 500

    return jsonify({
        'success': True,
        'message': 'Configuration updated successfully',
        'config': config.to_dict()
    })


@app.route('/api/config/reset', methods=['POST'])
def reset_config():
    """Restore the default configuration."""
    try:
        config = config_store.reset()
    except OSError as e:
        app.logger.error(f"Config reset error: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to reset configuration'}), 500

    return jsonify({
        'success': True,
        'message': 'Configuration reset to defaults',
        'config': config.to_dict()
    })


@app.route('/health')
def health_check():
    """Health check endpoint for monitoring."""
    return jsonify({
        'status': 'healthy',
        'service': 'Silo Monitor Backend',
        'version': '1.0.0',
        'configVersion': config_store.current.version,
        'timestamp': utc_now().isoformat()
    })


# ============================================================================
# DATABASE INITIALIZATION
# ============================================================================

def init_db():
    """Initialize the database, create tables and load the configuration."""
    with app.app_context():
        db.create_all()
        print("✓ Database initialized successfully")
    config_store.load()


def seed_demo_data():
    """Seed the database with a short demo series for one silo."""
    with app.app_context():
        # Check if data exists
        if SensorReading.query.first():
            print("✓ Demo data already exists")
            return

        thresholds = config_store.current.thresholds
        start = utc_now() - timedelta(minutes=30)

        # Cold store warming slowly over half an hour
        samples = [
            (5.2, 91.0, 140), (5.4, 91.5, 150), (5.9, 92.0, 170),
            (6.8, 92.4, 190), (7.9, 93.0, 230), (9.1, 93.8, 260),
            (10.4, 94.5, 300), (11.8, 95.2, 340)
        ]

        for i, (temp, hum, gas) in enumerate(samples):
            reading = build_reading(
                'SILO-01', Sample(temp, hum, gas), thresholds,
                timestamp=start + timedelta(minutes=4 * i),
                ip='192.168.1.50', rssi=-62
            )
            db.session.add(SensorReading.from_reading(reading))

        db.session.commit()
        print("✓ Demo data seeded successfully")


# ============================================================================
# APPLICATION ENTRY POINT
# ============================================================================

if __name__ == '__main__':
    init_db()
    seed_demo_data()

    print("\n" + "="*60)
    print("  Silo Monitor - Storage Risk Analytics")
    print("  Starting Flask Development Server...")
    print("="*60)
    print("\n  API Endpoint: http://localhost:5000/api/data")
    print("  Analytics: http://localhost:5000/api/trends/<deviceId>")
    print("  Health Check: http://localhost:5000/health")
    print("\n" + "="*60 + "\n")

    app.run(debug=True, host='0.0.0.0', port=5000)
