import logging
from contextlib import nullcontext
from typing import Dict, Iterable, List, Optional

from flask import has_app_context
from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError

from shared.errors import TransientInfrastructureError
from .models import db, RatingRecord, RatingChange, MatchRecord

logger = logging.getLogger(__name__)


class RatingLedger:
    """
    Persisted ratings and match results.

    Calls made from timer threads have no Flask app context; the ledger
    pushes one for the app it was built with.
    """

    def __init__(self, app=None, default_rating: int = 1000):
        self.app = app
        self.default_rating = default_rating

    def _context(self):
        if self.app is not None and not has_app_context():
            return self.app.app_context()
        return nullcontext()

    def get_ratings(self, participant_ids: Iterable[str], defaults: Dict[str, int] = None) -> Dict[str, int]:
        participant_ids = list(participant_ids)
        defaults = defaults or {}
        with self._context():
            try:
                records = RatingRecord.query.filter(RatingRecord.participant_id.in_(participant_ids)).all()
            except SQLAlchemyError as e:
                db.session.rollback()
                raise TransientInfrastructureError(f"Ledger read failed: {e}") from e
            found = {r.participant_id: r.rating for r in records}
        return {
            pid: found.get(pid, defaults.get(pid, self.default_rating))
            for pid in participant_ids
        }

    def get_record(self, participant_id: str) -> Optional[dict]:
        with self._context():
            record = RatingRecord.query.filter_by(participant_id=participant_id).first()
            if record is None:
                return None
            data = record.to_dict()
            data['game_types'] = self._game_stats([participant_id]).get(participant_id, {})
            return data

    def _game_stats(self, participant_ids: List[str] = None, game_type: str = None) -> Dict[str, Dict[str, dict]]:
        """Per participant, per game type win/loss counts from the rating history."""
        wins = func.sum(case((RatingChange.result == 'win', 1), else_=0))
        draws = func.sum(case((RatingChange.result == 'draw', 1), else_=0))
        query = (
            db.session.query(RatingChange.participant_id, RatingChange.game_type,
                             func.count(RatingChange.id), wins, draws)
            .filter(RatingChange.game_type.isnot(None))
        )
        if participant_ids is not None:
            query = query.filter(RatingChange.participant_id.in_(participant_ids))
        if game_type is not None:
            query = query.filter(RatingChange.game_type == game_type)

        stats = {}
        for participant_id, gt, played, won, drawn in query.group_by(RatingChange.participant_id, RatingChange.game_type):
            won, drawn = int(won or 0), int(drawn or 0)
            stats.setdefault(participant_id, {})[gt] = {
                'games_played': played,
                'wins': won,
                'losses': played - won - drawn,
                'draws': drawn,
                'win_rate': round(won / played, 3) if played else 0.0,
            }
        return stats

    def apply_session_ratings(
        self,
        session_id: str,
        new_ratings: Dict[str, int],
        prior_ratings: Dict[str, int],
        outcomes: Dict[str, str],
        match: dict = None,
    ) -> bool:
        """
        Apply every participant's new rating and append the match in one
        transaction. Returns False when the session was already applied.
        """
        with self._context():
            try:
                if RatingChange.query.filter_by(session_id=session_id).first():
                    logger.info(f"Ratings for session {session_id} already applied")
                    return False

                display_names = (match or {}).get('display_names', {})
                for participant_id, new_rating in new_ratings.items():
                    old_rating = prior_ratings[participant_id]
                    record = RatingRecord.query.filter_by(participant_id=participant_id).first()
                    if record is None:
                        record = RatingRecord(
                            participant_id=participant_id,
                            rating=old_rating,
                            peak_rating=old_rating,
                            games_played=0,
                            wins=0,
                            losses=0,
                            draws=0,
                        )
                        db.session.add(record)
                    if record.display_name is None and display_names.get(participant_id):
                        record.display_name = display_names[participant_id]

                    outcome = outcomes.get(participant_id, 'loss')
                    record.rating = new_rating
                    record.peak_rating = max(record.peak_rating, new_rating)
                    record.games_played += 1
                    if outcome == 'win':
                        record.wins += 1
                    elif outcome == 'draw':
                        record.draws += 1
                    else:
                        record.losses += 1

                    db.session.add(RatingChange(
                        record=record,
                        session_id=session_id,
                        participant_id=participant_id,
                        old_rating=old_rating,
                        new_rating=new_rating,
                        rating_change=new_rating - old_rating,
                        game_type=(match or {}).get('game_type'),
                        result=outcome,
                    ))

                if match is not None:
                    self._add_match(match, rating_status='applied')

                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                raise TransientInfrastructureError(f"Ledger write failed for session {session_id}: {e}") from e
        return True

    def record_match(self, match: dict, rating_status: str = 'unrated'):
        with self._context():
            try:
                self._add_match(match, rating_status)
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                raise TransientInfrastructureError(f"Ledger write failed for session {match['session_id']}: {e}") from e

    def _add_match(self, match: dict, rating_status: str):
        if MatchRecord.query.filter_by(session_id=match['session_id']).first():
            return
        db.session.add(MatchRecord(
            session_id=match['session_id'],
            game_type=match['game_type'],
            match_type=match['match_type'],
            outcome=match['outcome'],
            winner_id=match.get('winner_id'),
            participants=list(match['participants']),
            duration_seconds=match.get('duration_seconds', 0),
            move_count=match.get('move_count', 0),
            average_skill=match.get('average_skill'),
            rating_status=rating_status,
        ))

    def get_match(self, session_id: str) -> Optional[dict]:
        with self._context():
            match = MatchRecord.query.filter_by(session_id=session_id).first()
            return match.to_dict() if match else None

    def leaderboard(self, limit: int = 100, game_type: str = None) -> List[dict]:
        """
        Standings by rating. With ``game_type`` only participants who have
        played that game are listed, each carrying their stats for it.
        """
        with self._context():
            query = RatingRecord.query.filter(RatingRecord.games_played > 0)
            if game_type is not None:
                played = select(RatingChange.participant_id).where(RatingChange.game_type == game_type)
                query = query.filter(RatingRecord.participant_id.in_(played))
            records = (
                query
                .order_by(RatingRecord.rating.desc(), RatingRecord.participant_id)
                .limit(limit)
                .all()
            )
            standings = [r.to_dict() for r in records]
            if game_type is not None:
                stats = self._game_stats([s['participant_id'] for s in standings], game_type)
                for s in standings:
                    s['game_type'] = game_type
                    s['game_stats'] = stats.get(s['participant_id'], {}).get(game_type)

        for i, s in enumerate(standings):
            s['rank'] = i + 1
        return standings

    def history(self, participant_id: str, limit: int = 20, game_type: str = None) -> List[dict]:
        with self._context():
            query = RatingChange.query.filter_by(participant_id=participant_id)
            if game_type is not None:
                query = query.filter_by(game_type=game_type)
            changes = (
                query
                .order_by(RatingChange.created_at.desc(), RatingChange.id.desc())
                .limit(limit)
                .all()
            )
            return [c.to_dict() for c in changes]
