"""
Portrait Clash Arena - Flask Backend
JSON API over the arena engine, plus a Socket.IO "state_changed" feed so
every open tab refreshes when anyone votes.
"""

from dotenv import load_dotenv
load_dotenv()

from flask import Flask, request, jsonify, Response
from flask_socketio import SocketIO, emit
from flask_cors import CORS
import functools
import os
import secrets
import threading

import achievements
from arena import Arena, open_arena
from models import Rejection, StorageError

# App setup
basedir = os.path.abspath(os.path.dirname(__file__))
app = Flask(__name__)
app.secret_key = os.getenv('ARENA_SECRET_KEY') or secrets.token_hex(16)
CORS(app)

CORS_ORIGINS = [o.strip() for o in os.getenv('ARENA_CORS_ORIGINS', '*').split(',') if o.strip()]
socketio = SocketIO(app, cors_allowed_origins=CORS_ORIGINS if CORS_ORIGINS != ['*'] else '*')

DATA_DIR = os.getenv('ARENA_DATA_DIR', os.path.join(basedir, 'arena_data'))
SEED_COMPETITORS = os.getenv('ARENA_SEED', '1') != '0'
ADMIN_KEY = os.getenv('ARENA_ADMIN_KEY', '')
POLL_SECONDS = float(os.getenv('ARENA_POLL_SECONDS', '2'))

REJECTION_STATUS = {
    Rejection.NOT_FOUND: 404,
    Rejection.ALREADY_VOTED: 409,
    Rejection.INSUFFICIENT_COMPETITORS: 400,
    Rejection.INVALID_PAIRING: 400,
    Rejection.INVALID_WINNER: 400,
}

# Engine instance (built on first use, or injected with set_arena)
arena = None
_unsubscribe = None
_arena_lock = threading.Lock()


def broadcast_state_changed(revision):
    socketio.emit('state_changed', {'revision': revision})


def set_arena(new_arena: Arena) -> Arena:
    """Swap the engine this app serves and hook its change feed to Socket.IO."""
    global arena, _unsubscribe
    with _arena_lock:
        if _unsubscribe:
            _unsubscribe()
        arena = new_arena
        _unsubscribe = arena.on_state_changed(broadcast_state_changed)
    return arena


def get_arena() -> Arena:
    """Get or create the arena engine"""
    if arena is None:
        print(f"🏟️ Opening arena data in {DATA_DIR}")
        set_arena(open_arena(DATA_DIR, seed=SEED_COMPETITORS))
    return arena


def rejected(result):
    return jsonify({
        'error': result.message,
        'reason': result.error.value,
    }), REJECTION_STATUS.get(result.error, 400)


def json_body() -> dict:
    """The request's JSON object body, {} when there is none"""
    if not request.data:
        return {}
    data = request.get_json()
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def request_voter_id(data=None):
    """Voter id from the JSON body, query string or X-Voter-Id header (None = local voter)"""
    data = data or {}
    return (data.get('voter_id')
            or request.args.get('voter_id')
            or request.headers.get('X-Voter-Id')
            or None)


def require_admin(view):
    """Competitor edits need the X-Arena-Key header when ARENA_ADMIN_KEY is set"""
    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        if ADMIN_KEY and request.headers.get('X-Arena-Key') != ADMIN_KEY:
            return jsonify({'error': 'Invalid arena key'}), 403
        return view(*args, **kwargs)
    return wrapper


@app.errorhandler(ValueError)
def handle_bad_input(e):
    return jsonify({'error': str(e)}), 400


@app.errorhandler(StorageError)
def handle_storage_error(e):
    print(f"❌ Arena storage error: {e}")
    return jsonify({'error': 'Arena storage is unavailable, try again'}), 500

# ============================================================================
# HEALTH CHECK
# ============================================================================

@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'revision': get_arena().store.current_revision()})

# ============================================================================
# COMPETITOR ROUTES
# ============================================================================

@app.route('/api/competitors')
def list_competitors():
    return jsonify([c.to_dict() for c in get_arena().list_competitors()])


@app.route('/api/competitors', methods=['POST'])
@require_admin
def create_competitor():
    data = json_body()
    competitor = get_arena().create_competitor(
        data.get('name'), data.get('description'), data.get('image_ref'))
    print(f"✅ Competitor added: {competitor.name} ({competitor.id})")
    return jsonify(competitor.to_dict()), 201


@app.route('/api/competitors/<competitor_id>')
def competitor_detail(competitor_id):
    engine = get_arena()
    competitor = engine.get_competitor(competitor_id)
    if competitor is None:
        return jsonify({'error': 'Competitor not found'}), 404
    limit = request.args.get('limit', 10, type=int)
    payload = competitor.to_dict()
    payload['win_rate'] = competitor.win_rate
    payload['recent_votes'] = [v.to_dict() for v in engine.votes_for_competitor(competitor_id, limit)]
    return jsonify(payload)


@app.route('/api/competitors/<competitor_id>', methods=['PATCH'])
@require_admin
def update_competitor(competitor_id):
    data = json_body()
    fields = {k: data[k] for k in ('name', 'description', 'image_ref') if k in data}
    competitor = get_arena().update_competitor(competitor_id, **fields)
    if competitor is None:
        return jsonify({'error': 'Competitor not found'}), 404
    return jsonify(competitor.to_dict())


@app.route('/api/competitors/<competitor_id>', methods=['DELETE'])
@require_admin
def delete_competitor(competitor_id):
    if not get_arena().delete_competitor(competitor_id):
        return jsonify({'error': 'Competitor not found'}), 404
    print(f"🗑️  Competitor removed: {competitor_id}")
    return '', 204

# ============================================================================
# MATCHUP ROUTES
# ============================================================================

@app.route('/api/matchups', methods=['POST'])
def create_matchup():
    data = json_body()
    result = get_arena().create_matchup(data.get('competitor_a_id'), data.get('competitor_b_id'))
    if not result.ok:
        return rejected(result)
    return jsonify(result.value.to_dict()), 201


@app.route('/api/matchups/<matchup_id>')
def get_matchup(matchup_id):
    """Matchup with both competitors (None if since deleted) and the caller's vote"""
    engine = get_arena()
    matchup = engine.get_matchup(matchup_id)
    if matchup is None:
        return jsonify({'error': 'Matchup not found'}), 404

    payload = matchup.to_dict()
    for side, cid in (('competitor_a', matchup.competitor_a_id),
                      ('competitor_b', matchup.competitor_b_id)):
        competitor = engine.get_competitor(cid)
        payload[side] = competitor.to_dict() if competitor else None
    vote = engine.find_vote(matchup_id, request_voter_id())
    payload['your_vote'] = vote.to_dict() if vote else None
    return jsonify(payload)

# ============================================================================
# VOTE ROUTES
# ============================================================================

@app.route('/api/votes', methods=['POST'])
def cast_vote():
    data = json_body()
    engine = get_arena()
    voter_id = request_voter_id(data)
    result = engine.cast_vote(data.get('matchup_id'), data.get('winner_id'), voter_id)
    if not result.ok:
        return rejected(result)

    vote = result.value
    unlocked = engine.claim_achievements(vote.voter_id)
    for a in unlocked:
        print(f"🏅 {vote.voter_id} unlocked {a.title}")
    return jsonify({
        'vote': vote.to_dict(),
        'influence_gained': vote.influence_gained,
        'unlocked_achievements': [a.to_dict() for a in unlocked],
    }), 201


@app.route('/api/votes/<vote_id>/undo', methods=['POST'])
def undo_vote(vote_id):
    undone = get_arena().undo_vote(vote_id)
    return jsonify({'undone': undone}), (200 if undone else 409)


@app.route('/api/votes/recent')
def recent_votes():
    limit = request.args.get('limit', 10, type=int)
    return jsonify([v.to_dict() for v in get_arena().list_recent_votes(limit)])

# ============================================================================
# VOTER ROUTES
# ============================================================================

@app.route('/api/voter')
def get_voter():
    engine = get_arena()
    account = engine.get_voter_account(request_voter_id())
    payload = account.to_dict()
    payload['achievement_points'] = achievements.total_points(account)
    return jsonify(payload)


@app.route('/api/voter', methods=['PATCH'])
def update_voter():
    data = dict(json_body())
    voter_id = request_voter_id(data)
    data.pop('voter_id', None)
    account = get_arena().update_voter_account(voter_id, **data)
    return jsonify(account.to_dict())


@app.route('/api/voter/history')
def voter_history():
    return jsonify([v.to_dict() for v in get_arena().voter_history(request_voter_id())])


@app.route('/api/voter/export')
def export_history():
    fmt = request.args.get('format', 'csv')
    content = get_arena().export_votes(request_voter_id(), fmt)
    mimetype = 'application/json' if fmt == 'json' else 'text/csv'
    return Response(content, mimetype=mimetype, headers={
        'Content-Disposition': f'attachment; filename=portrait-clash-history.{fmt}'
    })


@app.route('/api/achievements')
def list_achievements():
    return jsonify([a.to_dict() for a in achievements.ACHIEVEMENTS])

# ============================================================================
# LEADERBOARD & ANALYTICS ROUTES
# ============================================================================

@app.route('/api/leaderboard')
def api_leaderboard():
    return jsonify(get_arena().get_leaderboard())


@app.route('/api/analytics')
def api_analytics():
    return jsonify(get_arena().get_analytics())

# ============================================================================
# WEBSOCKET HANDLERS
# ============================================================================

@socketio.on('connect')
def handle_connect():
    print(f'✅ Client connected: {request.sid}')
    emit('state_changed', {'revision': get_arena().store.current_revision()})


@socketio.on('sync')
def handle_sync(data=None):
    """Client asks for the current revision (e.g. after waking from sleep)"""
    emit('state_changed', {'revision': get_arena().store.current_revision()})

# ============================================================================
# EXTERNAL CHANGE WATCHER
# ============================================================================

_watcher_started = False


def watch_external_changes():
    """Background loop: rebroadcast commits made by other processes sharing DATA_DIR."""
    print(f"👀 Watching {DATA_DIR} for changes every {POLL_SECONDS}s")
    while True:
        socketio.sleep(POLL_SECONDS)
        try:
            get_arena().check_for_external_changes()
        except StorageError as e:
            print(f"⚠️  Change watcher could not read the store: {e}")


def start_watcher_once():
    """Start the change watcher (safe to call multiple times)."""
    global _watcher_started
    if _watcher_started:
        return
    _watcher_started = True
    socketio.start_background_task(watch_external_changes)


if __name__ == '__main__':
    host = os.getenv('ARENA_HOST', '127.0.0.1')
    port = int(os.getenv('ARENA_PORT', 8000))
    print("\n" + "="*60)
    print("🖼️  PORTRAIT CLASH ARENA")
    print("="*60)
    print(f"\n🌐 Server: http://{host}:{port}")
    print(f"📁 Data: {DATA_DIR}")
    print("\n" + "="*60 + "\n")

    get_arena()
    start_watcher_once()
    socketio.run(app, host=host, port=port, debug=True, use_reloader=False,
                 allow_unsafe_werkzeug=True)
