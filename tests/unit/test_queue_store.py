"""
Unit tests for QueueStore.
"""
import pytest

from arena.queue_store import QueueStore, MatchType
from shared.errors import ValidationError


@pytest.fixture
def online(connections):
    def connect(*participant_ids):
        for pid in participant_ids:
            connections.connect(pid, f"user:{pid}:notifications")
    return connect


class TestJoin:

    def test_join_records_entrant(self, queue_store, online, clock):
        online('alice')
        entrant = queue_store.join('alice', 'tictactoe', 'ranked', 1200, preferences={'speed': 'fast'})

        assert entrant.match_type == MatchType.RANKED
        assert entrant.join_timestamp == clock.now
        assert entrant.preferences == {'speed': 'fast'}
        assert entrant.liveness_token == 'user:alice:notifications'
        assert queue_store.size('tictactoe', 'ranked') == 1

    def test_rejoin_displaces_other_match_type(self, queue_store, online):
        online('alice')
        queue_store.join('alice', 'tictactoe', 'casual', 1000)
        queue_store.join('alice', 'tictactoe', 'ranked', 1000)

        assert queue_store.size('tictactoe', 'casual') == 0
        assert queue_store.size('tictactoe', 'ranked') == 1
        assert len(queue_store.entrants_for('alice')) == 1

    def test_rejoin_refreshes_timestamp(self, queue_store, online, clock):
        online('alice')
        queue_store.join('alice', 'tictactoe', 'casual', 1000)
        clock.advance(10)
        entrant = queue_store.join('alice', 'tictactoe', 'casual', 1000)

        assert entrant.join_timestamp == clock.now
        assert queue_store.size('tictactoe', 'casual') == 1

    def test_different_game_types_coexist(self, queue_store, online):
        online('alice')
        queue_store.join('alice', 'tictactoe', 'casual', 1000)
        queue_store.join('alice', 'connect4', 'casual', 1000)

        assert len(queue_store.entrants_for('alice')) == 2

    @pytest.mark.parametrize('kwargs', [
        {'participant_id': ''},
        {'game_type': ''},
        {'match_type': 'blitz'},
        {'skill_rating': -1},
        {'skill_rating': '1000'},
        {'skill_rating': True},
        {'preferences': ['fast']},
    ])
    def test_invalid_join_rejected(self, queue_store, kwargs):
        request = {
            'participant_id': 'alice',
            'game_type': 'tictactoe',
            'match_type': 'casual',
            'skill_rating': 1000,
        }
        request.update(kwargs)
        with pytest.raises(ValidationError):
            queue_store.join(**request)
        assert queue_store.active_partitions() == []


class TestLeave:

    def test_leave_removes_all_game_entries(self, queue_store, online):
        online('alice')
        queue_store.join('alice', 'tictactoe', 'casual', 1000)
        queue_store.join('alice', 'connect4', 'ranked', 1000)

        removed = queue_store.leave('alice')

        assert len(removed) == 2
        assert queue_store.entrants_for('alice') == []

    def test_leave_single_game_type(self, queue_store, online):
        online('alice')
        queue_store.join('alice', 'tictactoe', 'casual', 1000)
        queue_store.join('alice', 'connect4', 'casual', 1000)

        queue_store.leave('alice', 'connect4')

        assert [e.game_type for e in queue_store.entrants_for('alice')] == ['tictactoe']

    def test_leave_absent_is_noop(self, queue_store):
        assert queue_store.leave('nobody') == []


class TestSnapshot:

    def test_sorted_by_join_time(self, queue_store, online, clock):
        online('a', 'b', 'c')
        queue_store.join('b', 'tictactoe', 'casual', 1000)
        clock.advance(1)
        queue_store.join('a', 'tictactoe', 'casual', 1000)
        clock.advance(1)
        queue_store.join('c', 'tictactoe', 'casual', 1000)

        assert [e.participant_id for e in queue_store.snapshot('tictactoe', 'casual')] == ['b', 'a', 'c']

    def test_snapshot_is_restartable(self, queue_store, online):
        online('a', 'b')
        queue_store.join('a', 'tictactoe', 'casual', 1000)
        queue_store.join('b', 'tictactoe', 'casual', 1000)

        first = queue_store.snapshot('tictactoe', 'casual')
        second = queue_store.snapshot('tictactoe', 'casual')
        assert first == second

    def test_expired_liveness_evicts(self, queue_store, online, clock, connections):
        online('a', 'b')
        queue_store.join('a', 'tictactoe', 'casual', 1000)
        queue_store.join('b', 'tictactoe', 'casual', 1000)

        clock.advance(200)
        connections.touch('b')
        clock.advance(150)

        assert [e.participant_id for e in queue_store.snapshot('tictactoe', 'casual')] == ['b']
        assert queue_store.size('tictactoe', 'casual') == 1

    def test_unknown_partition_is_empty(self, queue_store):
        assert queue_store.snapshot('tictactoe', 'ranked') == []


class TestClaim:

    def test_claim_removes_all(self, queue_store, online):
        online('a', 'b')
        queue_store.join('a', 'tictactoe', 'ranked', 1000)
        queue_store.join('b', 'tictactoe', 'ranked', 1000)

        claimed = queue_store.claim('tictactoe', 'ranked', ['a', 'b'])

        assert [e.participant_id for e in claimed] == ['a', 'b']
        assert queue_store.size('tictactoe', 'ranked') == 0

    def test_claim_is_all_or_nothing(self, queue_store, online):
        online('a')
        queue_store.join('a', 'tictactoe', 'ranked', 1000)

        assert queue_store.claim('tictactoe', 'ranked', ['a', 'b']) is None
        assert queue_store.size('tictactoe', 'ranked') == 1

    def test_same_entrant_cannot_be_claimed_twice(self, queue_store, online):
        online('a', 'b', 'c')
        for pid in ('a', 'b', 'c'):
            queue_store.join(pid, 'tictactoe', 'casual', 1000)

        assert queue_store.claim('tictactoe', 'casual', ['a', 'b']) is not None
        assert queue_store.claim('tictactoe', 'casual', ['a', 'c']) is None

    def test_claim_rejects_rejoined_entrant(self, queue_store, online, clock):
        """A claim built from an older snapshot fails if someone rejoined since."""
        online('a', 'b')
        seen = [queue_store.join(pid, 'tictactoe', 'ranked', 1000) for pid in ('a', 'b')]
        clock.advance(5)
        queue_store.join('b', 'tictactoe', 'ranked', 1300)

        assert queue_store.claim('tictactoe', 'ranked', ['a', 'b'], expected=seen) is None
        assert queue_store.size('tictactoe', 'ranked') == 2
        assert queue_store.entrants_for('b')[0].skill_rating == 1300

    def test_claim_with_matching_snapshot(self, queue_store, online):
        online('a', 'b')
        seen = [queue_store.join(pid, 'tictactoe', 'ranked', 1000) for pid in ('a', 'b')]

        assert queue_store.claim('tictactoe', 'ranked', ['a', 'b'], expected=seen) == seen

    def test_release_keeps_join_time(self, queue_store, online, clock):
        online('a')
        joined = queue_store.join('a', 'tictactoe', 'ranked', 1000)
        claimed = queue_store.claim('tictactoe', 'ranked', ['a'])
        clock.advance(30)

        assert queue_store.release(claimed) == claimed
        assert queue_store.snapshot('tictactoe', 'ranked')[0].join_timestamp == joined.join_timestamp

    def test_release_skips_rejoined(self, queue_store, online):
        online('a')
        queue_store.join('a', 'tictactoe', 'ranked', 1000)
        claimed = queue_store.claim('tictactoe', 'ranked', ['a'])
        queue_store.join('a', 'tictactoe', 'casual', 1000)

        assert queue_store.release(claimed) == []
        assert queue_store.size('tictactoe', 'ranked') == 0


class TestStatus:

    def test_status_reports_average(self, queue_store, online):
        online('a', 'b')
        queue_store.join('a', 'tictactoe', 'ranked', 1000)
        queue_store.join('b', 'tictactoe', 'ranked', 1201)

        status = queue_store.status('tictactoe', 'ranked')

        assert status == {
            'game_type': 'tictactoe',
            'match_type': 'ranked',
            'players_in_queue': 2,
            'average_skill': 1100,
        }

    def test_empty_status(self, queue_store):
        assert queue_store.status('connect4', 'casual')['average_skill'] is None

    def test_active_partitions(self, queue_store, online):
        online('a')
        queue_store.join('a', 'connect4', 'casual', 1000)
        assert queue_store.active_partitions() == [('connect4', MatchType.CASUAL)]

        queue_store.leave('a')
        assert queue_store.active_partitions() == []

    def test_works_without_connection_registry(self, clock):
        store = QueueStore(clock=clock)
        store.join('a', 'tictactoe', 'casual', 1000)
        assert len(store.snapshot('tictactoe', 'casual')) == 1
