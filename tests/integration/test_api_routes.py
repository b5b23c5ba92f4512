"""
Integration tests for API routes.
Tests the queue, session, connectivity and rating endpoints end to end.
"""
import pytest
import json


def join(client, participant_id, game_type='tictactoe', match_type='ranked', skill_rating=1000, **extra):
    payload = {
        'participant_id': participant_id,
        'game_type': game_type,
        'match_type': match_type,
        'skill_rating': skill_rating,
    }
    payload.update(extra)
    return client.post('/api/v1/queue/join', json=payload)


def move(client, session_id, participant_id, position):
    return client.post(f'/api/v1/sessions/{session_id}/moves', json={
        'participant_id': participant_id,
        'move': {'position': position}
    })


@pytest.fixture
def session_id(client, db_session):
    """A running ranked tic-tac-toe session between alice and bob."""
    join(client, 'alice', display_name='Alice')
    join(client, 'bob', display_name='Bob')

    response = client.post('/api/v1/pairing/run')
    data = json.loads(response.data)
    assert data['count'] == 1
    return data['sessions'][0]['session_id']


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    def test_health_check(self, client):
        """Health check should return 200 without redis configured."""
        response = client.get('/health')
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data['status'] == 'healthy'
        assert data['database'] == 'connected'
        assert data['redis'] == 'disabled'
        assert data['pending_ratings'] == 0


class TestQueueRoutes:
    """Tests for joining, leaving and inspecting queues."""

    def test_join_queue(self, client, db_session):
        """POST /api/v1/queue/join should enqueue the participant."""
        response = join(client, 'alice', display_name='Alice')

        assert response.status_code == 201
        data = json.loads(response.data)
        assert data['entrant']['participant_id'] == 'alice'
        assert data['entrant']['display_name'] == 'Alice'
        assert data['queue']['players_in_queue'] == 1

    def test_match_type_defaults_to_casual(self, client, db_session):
        response = client.post('/api/v1/queue/join', json={'participant_id': 'alice', 'game_type': 'connect4'})

        assert response.status_code == 201
        assert json.loads(response.data)['entrant']['match_type'] == 'casual'

    def test_join_missing_fields(self, client):
        """Missing participant_id should fail validation."""
        response = client.post('/api/v1/queue/join', json={'game_type': 'tictactoe'})

        assert response.status_code == 400
        data = json.loads(response.data)
        assert data['type'] == 'ValidationError'
        assert 'participant_id' in data['error']

    @pytest.mark.parametrize('payload', [
        {'game_type': 'chess'},
        {'match_type': 'tournament'},
        {'match_type': 'casual', 'skill_rating': -5},
        {'preferences': 'fast'},
    ])
    def test_join_rejects_bad_values(self, client, db_session, payload):
        response = join(client, 'alice', **payload)
        assert response.status_code == 400

    def test_join_without_body(self, client):
        response = client.post('/api/v1/queue/join', data='not json', content_type='text/plain')
        assert response.status_code == 400

    def test_queue_status(self, client, db_session):
        join(client, 'alice', skill_rating=1000)
        join(client, 'bob', skill_rating=1400)

        response = client.get('/api/v1/queue/tictactoe/ranked')

        assert response.status_code == 200
        assert json.loads(response.data)['players_in_queue'] == 2

    def test_leave_queue(self, client, db_session):
        join(client, 'alice')

        response = client.post('/api/v1/queue/leave', json={'participant_id': 'alice'})

        data = json.loads(response.data)
        assert data['count'] == 1
        status = json.loads(client.get('/api/v1/queue/tictactoe/ranked').data)
        assert status['players_in_queue'] == 0

    def test_far_apart_ratings_not_paired(self, client, app, db_session):
        app.ledger.apply_session_ratings('earlier-session', {'bob': 1500}, {'bob': 1000}, {'bob': 'win'})
        join(client, 'alice')
        join(client, 'bob')

        data = json.loads(client.post('/api/v1/pairing/run').data)

        assert data['count'] == 0

    def test_ranked_join_uses_ledger_rating(self, client, app, db_session):
        app.ledger.apply_session_ratings('earlier-session', {'bob': 1500}, {'bob': 1000}, {'bob': 'win'})

        response = join(client, 'bob', skill_rating=900)

        assert json.loads(response.data)['entrant']['skill_rating'] == 1500

    def test_list_games(self, client):
        data = json.loads(client.get('/api/v1/games').data)
        assert {g['id'] for g in data['games']} >= {'tictactoe', 'connect4'}


class TestSessionRoutes:
    """Tests for live session endpoints."""

    def test_get_session(self, client, session_id):
        response = client.get(f'/api/v1/sessions/{session_id}')

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'running'
        assert data['participants'] == ['alice', 'bob']
        assert data['game']['current_participant'] == 'alice'
        assert data['display_names'] == {'alice': 'Alice', 'bob': 'Bob'}

    def test_get_session_not_found(self, client):
        """GET /api/v1/sessions/{id} with invalid ID should 404."""
        response = client.get('/api/v1/sessions/nonexistent')
        assert response.status_code == 404

    def test_list_sessions(self, client, session_id):
        data = json.loads(client.get('/api/v1/sessions?status=running').data)
        assert [s['session_id'] for s in data['sessions']] == [session_id]

    def test_submit_move(self, client, session_id):
        response = move(client, session_id, 'alice', 4)

        assert response.status_code == 201
        data = json.loads(response.data)
        assert data['move']['sequence_number'] == 1
        assert data['session']['game']['current_participant'] == 'bob'

    def test_move_out_of_turn(self, client, session_id):
        """Moving out of turn is a state conflict."""
        response = move(client, session_id, 'bob', 4)

        assert response.status_code == 409
        data = json.loads(response.data)
        assert data['state'] == 'running'
        assert data['action'] == 'move'

    def test_illegal_move(self, client, session_id):
        move(client, session_id, 'alice', 4)
        response = move(client, session_id, 'bob', 4)
        assert response.status_code == 400

    def test_move_without_payload(self, client, session_id):
        response = client.post(f'/api/v1/sessions/{session_id}/moves', json={'participant_id': 'alice'})
        assert response.status_code == 400

    def test_rejoin_while_playing(self, client, session_id):
        response = join(client, 'alice', game_type='connect4')
        assert response.status_code == 409

    def test_session_events(self, client, session_id):
        move(client, session_id, 'alice', 4)

        data = json.loads(client.get(f'/api/v1/sessions/{session_id}/events?count=2').data)

        assert len(data['events']) == 2
        assert data['events'][0]['type'] == 'move.applied'


class TestFullMatchFlow:
    """Queue to rating: play a ranked game through the API."""

    def test_ranked_game_updates_ledger(self, client, session_id):
        for pid, position in [('alice', 0), ('bob', 3), ('alice', 1), ('bob', 4)]:
            assert move(client, session_id, pid, position).status_code == 201

        response = move(client, session_id, 'alice', 2)
        data = json.loads(response.data)
        session = data['session']
        assert session['status'] == 'concluded'
        assert session['result']['winner_id'] == 'alice'
        assert session['rating_status'] == 'applied'
        assert session['rating_changes'] == {'alice': 16, 'bob': -16}

        alice = json.loads(client.get('/api/v1/ratings/alice').data)
        assert alice['rating'] == 1016
        assert alice['wins'] == 1
        assert alice['display_name'] == 'Alice'

        standings = json.loads(client.get('/api/v1/leaderboard').data)['standings']
        assert [s['participant_id'] for s in standings] == ['alice', 'bob']

        history = json.loads(client.get('/api/v1/ratings/bob/history').data)['history']
        assert history[0]['session_id'] == session_id
        assert history[0]['rating_change'] == -16

    def test_moves_after_conclusion_rejected(self, client, session_id):
        client.post(f'/api/v1/sessions/{session_id}/forfeit', json={'participant_id': 'bob'})

        response = move(client, session_id, 'alice', 0)

        assert response.status_code == 409

    def test_forfeit(self, client, session_id):
        response = client.post(f'/api/v1/sessions/{session_id}/forfeit', json={'participant_id': 'alice'})

        data = json.loads(response.data)
        assert data['result']['outcome'] == 'forfeit'
        assert data['result']['winner_id'] == 'bob'
        assert json.loads(client.get('/api/v1/ratings/bob').data)['rating'] == 1016

    def test_participants_can_requeue(self, client, session_id):
        client.post(f'/api/v1/sessions/{session_id}/forfeit', json={'participant_id': 'alice'})

        response = join(client, 'alice', skill_rating=None)

        assert response.status_code == 201
        assert json.loads(response.data)['entrant']['skill_rating'] == 984

    def test_ranked_rejoin_ignores_claimed_rating(self, client, session_id):
        client.post(f'/api/v1/sessions/{session_id}/forfeit', json={'participant_id': 'alice'})

        entrant = json.loads(join(client, 'alice', skill_rating=2400).data)['entrant']
        join(client, 'bob', skill_rating=2400)
        rematch = json.loads(client.post('/api/v1/pairing/run').data)['sessions'][0]['session_id']
        client.post(f'/api/v1/sessions/{rematch}/forfeit', json={'participant_id': 'alice'})

        assert entrant['skill_rating'] == 984
        history = json.loads(client.get('/api/v1/ratings/alice/history').data)['history']
        assert [h['session_id'] for h in history] == [rematch, session_id]
        assert history[0]['old_rating'] == history[1]['new_rating'] == 984
        alice = json.loads(client.get('/api/v1/ratings/alice').data)
        assert alice['rating'] == history[0]['new_rating'] < 984

    def test_casual_game_leaves_ratings_alone(self, client, db_session):
        join(client, 'alice', match_type='casual')
        join(client, 'bob', match_type='casual', skill_rating=1900)
        session_id = json.loads(client.post('/api/v1/pairing/run').data)['sessions'][0]['session_id']

        client.post(f'/api/v1/sessions/{session_id}/forfeit', json={'participant_id': 'bob'})

        assert client.get('/api/v1/ratings/alice').status_code == 404
        assert json.loads(client.get('/api/v1/leaderboard').data)['standings'] == []


class TestConnectivityRoutes:
    """Tests for connection and leave endpoints."""

    def test_disconnect_pauses_session(self, client, session_id):
        response = client.delete('/api/v1/connections/bob')

        data = json.loads(response.data)
        assert data['session']['game']['status'] == 'paused'
        assert data['session']['game']['unreachable'] == ['bob']

    def test_reconnect_resumes(self, client, session_id):
        client.delete('/api/v1/connections/bob')

        response = client.post('/api/v1/connections', json={'participant_id': 'bob', 'channel_ref': 'ws-9'})

        data = json.loads(response.data)
        assert data['session']['game']['status'] == 'running'

    def test_connect_without_session(self, client):
        data = json.loads(client.post('/api/v1/connections', json={'participant_id': 'carol'}).data)
        assert data['session'] is None

    def test_explicit_leave_forfeits(self, client, session_id):
        response = client.post('/api/v1/participants/bob/leave')

        data = json.loads(response.data)
        assert data['result']['outcome'] == 'forfeit'
        assert data['result']['winner_id'] == 'alice'


class TestRatingRoutes:

    def test_unknown_rating(self, client, db_session):
        response = client.get('/api/v1/ratings/nobody')
        assert response.status_code == 404

    def test_reconcile_with_nothing_pending(self, client):
        data = json.loads(client.post('/api/v1/ratings/reconcile').data)
        assert data == {'applied': [], 'pending': []}

    def test_event_stream_needs_redis(self, client):
        response = client.get('/api/v1/events/user/alice')
        assert response.status_code == 503

    def test_standings_and_history_by_game_type(self, client, session_id):
        client.post(f'/api/v1/sessions/{session_id}/forfeit', json={'participant_id': 'bob'})

        standings = json.loads(client.get('/api/v1/leaderboard?game_type=tictactoe').data)['standings']
        assert [s['participant_id'] for s in standings] == ['alice', 'bob']
        assert standings[0]['game_stats']['wins'] == 1
        assert standings[1]['game_stats']['win_rate'] == 0.0
        assert json.loads(client.get('/api/v1/leaderboard?game_type=connect4').data)['standings'] == []

        history = json.loads(client.get('/api/v1/ratings/bob/history?game_type=tictactoe').data)['history']
        assert [h['game_type'] for h in history] == ['tictactoe']
        assert json.loads(client.get('/api/v1/ratings/bob/history?game_type=connect4').data)['history'] == []

        bob = json.loads(client.get('/api/v1/ratings/bob').data)
        assert bob['game_types']['tictactoe']['losses'] == 1
