import os
import logging

import redis
from flask import Flask, request, jsonify, Response
from sqlalchemy.exc import SQLAlchemyError

from games import supported_games
from shared.errors import ArenaError, StateConflict, ValidationError, ResourceNotFound
from shared.pubsub import PubSubClient, LocalNotifier
from .config import config
from .connection_registry import RedisConnectionRegistry, InMemoryConnectionRegistry
from .ledger import RatingLedger
from .match_orchestrator import MatchOrchestrator
from .models import db
from .pairing import PairingEngine
from .pubsub_manager import PubSubManager
from .queue_store import QueueStore
from .rating_engine import RatingEngine
from .scheduler import PairingScheduler

logger = logging.getLogger(__name__)


def create_app(config_name: str = None) -> Flask:
    """Application factory for the arena service."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # Initialize extensions
    db.init_app(app)

    # Create tables
    with app.app_context():
        db.create_all()

    app.redis = None
    if app.config['CONNECTION_BACKEND'] == 'redis' or app.config['NOTIFIER_BACKEND'] == 'redis':
        app.redis = redis.from_url(
            app.config['REDIS_URL'],
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )

    if app.config['CONNECTION_BACKEND'] == 'redis':
        connections = RedisConnectionRegistry(app.redis, ttl=app.config['CONNECTION_TTL'])
    else:
        connections = InMemoryConnectionRegistry(ttl=app.config['CONNECTION_TTL'])

    if app.config['NOTIFIER_BACKEND'] == 'redis':
        notifier = PubSubClient(redis_client=app.redis)
    else:
        notifier = LocalNotifier()

    result_stream = PubSubManager(
        project_id=app.config['GCP_PROJECT_ID'] or None,
        topic=app.config['RESULTS_TOPIC']
    )
    ledger = RatingLedger(app, default_rating=app.config['DEFAULT_RATING'])
    rating_engine = RatingEngine(
        ledger=ledger,
        k_factor=app.config['K_FACTOR'],
        rating_floor=app.config['RATING_FLOOR'],
        multiplayer_mode=app.config['MULTIPLAYER_RATING_MODE'],
        retry_attempts=app.config['LEDGER_RETRY_ATTEMPTS'],
        retry_wait=app.config['LEDGER_RETRY_WAIT'],
        result_stream=result_stream
    )
    queue_store = QueueStore(connections)
    pairing_engine = PairingEngine(
        base_threshold=app.config['BASE_THRESHOLD'],
        expansion_interval=app.config['EXPANSION_INTERVAL'],
        expansion_step=app.config['EXPANSION_STEP']
    )

    orchestrator = MatchOrchestrator(
        queue_store,
        pairing_engine,
        rating_engine,
        ledger,
        notifier,
        connections,
        result_stream=result_stream,
        move_timeout=app.config['MOVE_TIMEOUT'],
        duration_limit=app.config['GAME_DURATION_LIMIT'],
        grace_period=app.config['RECONNECT_GRACE'],
        retention=app.config['SESSION_RETENTION']
    )
    if app.config['PAIRING_SCHEDULER_ENABLED']:
        orchestrator.scheduler = PairingScheduler(
            orchestrator.scan_partition,
            queue_store.active_partitions,
            heartbeat=app.config['PAIRING_HEARTBEAT'],
            debounce=app.config['PAIRING_DEBOUNCE']
        )

    # Store services on app for access in routes
    app.orchestrator = orchestrator
    app.ledger = ledger
    app.rating_engine = rating_engine
    app.notifier = notifier
    app.result_stream = result_stream

    register_error_handlers(app)
    register_api_routes(app)

    return app


def register_error_handlers(app: Flask):

    @app.errorhandler(ArenaError)
    def handle_arena_error(e: ArenaError):
        if isinstance(e, StateConflict):
            logger.warning(f"Rejected {e.action} in state {e.state}: {e.message}")
        return jsonify(e.to_dict()), e.status_code


def _require(data: dict, *fields):
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")


def register_api_routes(app: Flask):
    """Register API routes."""

    # ==================== Queue ====================

    @app.route('/api/v1/queue/join', methods=['POST'])
    def api_join_queue():
        data = request.get_json(silent=True) or {}
        _require(data, 'participant_id', 'game_type')

        entrant = app.orchestrator.join_queue(
            participant_id=data['participant_id'],
            game_type=data['game_type'],
            match_type=data.get('match_type', 'casual'),
            skill_rating=data.get('skill_rating'),
            preferences=data.get('preferences'),
            region=data.get('region', 'global'),
            display_name=data.get('display_name'),
            channel_ref=data.get('channel_ref')
        )

        return jsonify({
            'message': 'Joined queue',
            'entrant': entrant.to_dict(),
            'queue': app.orchestrator.queue_status(entrant.game_type, entrant.match_type)
        }), 201

    @app.route('/api/v1/queue/leave', methods=['POST'])
    def api_leave_queue():
        data = request.get_json(silent=True) or {}
        _require(data, 'participant_id')

        removed = app.orchestrator.leave_queue(data['participant_id'], data.get('game_type'))
        return jsonify({'removed': removed, 'count': len(removed)})

    @app.route('/api/v1/queue/<game_type>/<match_type>', methods=['GET'])
    def api_queue_status(game_type: str, match_type: str):
        return jsonify(app.orchestrator.queue_status(game_type, match_type))

    @app.route('/api/v1/pairing/run', methods=['POST'])
    def api_run_pairing():
        """Run one pairing pass over every active queue."""
        sessions = app.orchestrator.run_pairing()
        return jsonify({
            'sessions': [s.to_dict() for s in sessions],
            'count': len(sessions)
        })

    @app.route('/api/v1/games', methods=['GET'])
    def api_list_games():
        return jsonify({'games': supported_games()})

    # ==================== Sessions ====================

    @app.route('/api/v1/sessions', methods=['GET'])
    def api_list_sessions():
        sessions = app.orchestrator.list_sessions(status=request.args.get('status'))
        return jsonify({
            'sessions': [s.to_dict() for s in sessions],
            'count': len(sessions)
        })

    @app.route('/api/v1/sessions/<session_id>', methods=['GET'])
    def api_get_session(session_id: str):
        return jsonify(app.orchestrator.get_session(session_id).to_dict())

    @app.route('/api/v1/sessions/<session_id>/moves', methods=['POST'])
    def api_submit_move(session_id: str):
        data = request.get_json(silent=True) or {}
        _require(data, 'participant_id')
        if 'move' not in data:
            raise ValidationError("Missing required field(s): move")

        move = app.orchestrator.submit_move(session_id, data['participant_id'], data['move'])
        return jsonify({
            'move': move.to_dict(),
            'session': app.orchestrator.get_session(session_id).to_dict()
        }), 201

    @app.route('/api/v1/sessions/<session_id>/forfeit', methods=['POST'])
    def api_forfeit(session_id: str):
        data = request.get_json(silent=True) or {}
        _require(data, 'participant_id')

        app.orchestrator.forfeit(session_id, data['participant_id'])
        return jsonify(app.orchestrator.get_session(session_id).to_dict())

    @app.route('/api/v1/sessions/<session_id>/events', methods=['GET'])
    def api_session_events(session_id: str):
        app.orchestrator.get_session(session_id)
        count = request.args.get('count', 50, type=int)
        events = app.notifier.get_recent_events(session_id, count)
        return jsonify({
            'session_id': session_id,
            'events': [e.to_dict() for e in events]
        })

    # ==================== Connectivity ====================

    @app.route('/api/v1/connections', methods=['POST'])
    def api_connection_established():
        data = request.get_json(silent=True) or {}
        _require(data, 'participant_id')
        participant_id = data['participant_id']

        session = app.orchestrator.connection_established(
            participant_id,
            data.get('channel_ref') or f"user:{participant_id}:notifications"
        )
        return jsonify({
            'participant_id': participant_id,
            'session': session.to_dict() if session else None
        })

    @app.route('/api/v1/connections/<participant_id>', methods=['DELETE'])
    def api_connection_lost(participant_id: str):
        session = app.orchestrator.connection_lost(participant_id)
        return jsonify({
            'participant_id': participant_id,
            'session': session.to_dict() if session else None
        })

    @app.route('/api/v1/participants/<participant_id>/leave', methods=['POST'])
    def api_explicit_leave(participant_id: str):
        result = app.orchestrator.explicit_leave(participant_id)
        return jsonify({
            'participant_id': participant_id,
            'result': result.to_dict() if result else None
        })

    # ==================== Ratings ====================

    @app.route('/api/v1/ratings/<participant_id>', methods=['GET'])
    def api_get_rating(participant_id: str):
        record = app.ledger.get_record(participant_id)
        if record is None:
            raise ResourceNotFound("Rating record", participant_id)
        return jsonify(record)

    @app.route('/api/v1/ratings/<participant_id>/history', methods=['GET'])
    def api_rating_history(participant_id: str):
        limit = request.args.get('limit', 20, type=int)
        return jsonify({
            'participant_id': participant_id,
            'history': app.ledger.history(participant_id, limit, request.args.get('game_type'))
        })

    @app.route('/api/v1/ratings/reconcile', methods=['POST'])
    def api_reconcile_ratings():
        applied = app.rating_engine.reconcile_pending()
        return jsonify({
            'applied': applied,
            'pending': app.rating_engine.pending_sessions()
        })

    @app.route('/api/v1/leaderboard', methods=['GET'])
    def api_leaderboard():
        limit = request.args.get('limit', 100, type=int)
        return jsonify({'standings': app.ledger.leaderboard(limit, request.args.get('game_type'))})

    # ==================== Real-time Events (SSE) ====================

    @app.route('/api/v1/events/user/<user_id>')
    def api_user_events(user_id: str):
        """SSE endpoint for user notifications."""
        if app.config['NOTIFIER_BACKEND'] != 'redis':
            return jsonify({'error': 'Event streaming requires the redis notifier'}), 503

        def generate():
            sse_redis = redis.from_url(
                app.config['REDIS_URL'],
                decode_responses=True,
                socket_timeout=None,
                socket_connect_timeout=5
            )
            pubsub = sse_redis.pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(f'user:{user_id}:notifications')

            session = app.orchestrator.session_for(user_id)
            if session is not None:
                pubsub.subscribe(f'session:{session.session_id}:events')

            yield f"data: {{\"type\":\"connected\",\"user_id\":\"{user_id}\"}}\n\n"

            try:
                while True:
                    message = pubsub.get_message(timeout=30)
                    if message and message['type'] == 'message':
                        yield f"data: {message['data']}\n\n"
                    else:
                        yield ": keepalive\n\n"
            finally:
                pubsub.close()

        return Response(generate(), mimetype='text/event-stream', headers={
            'Cache-Control': 'no-cache',
            'X-Accel-Buffering': 'no'
        })

    # ==================== Health Check ====================

    @app.route('/health')
    def health_check():
        """Health check endpoint."""
        redis_state = 'disabled'
        if app.redis is not None:
            try:
                app.redis.ping()
                redis_state = 'connected'
            except redis.RedisError:
                redis_state = 'disconnected'

        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except SQLAlchemyError:
            db_ok = False

        healthy = db_ok and redis_state != 'disconnected'
        return jsonify({
            'status': 'healthy' if healthy else 'unhealthy',
            'redis': redis_state,
            'database': 'connected' if db_ok else 'disconnected',
            'pending_ratings': len(app.rating_engine.pending_sessions())
        }), 200 if healthy else 503
