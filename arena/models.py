from datetime import datetime
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


class RatingRecord(db.Model):
    __tablename__ = 'rating_records'

    id = db.Column(db.Integer, primary_key=True)
    participant_id = db.Column(db.String(100), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(100), nullable=True)
    rating = db.Column(db.Integer, nullable=False, default=1000)
    peak_rating = db.Column(db.Integer, nullable=False, default=1000)
    games_played = db.Column(db.Integer, default=0)
    wins = db.Column(db.Integer, default=0)
    losses = db.Column(db.Integer, default=0)
    draws = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    changes = db.relationship('RatingChange', back_populates='record', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'participant_id': self.participant_id,
            'display_name': self.display_name,
            'rating': self.rating,
            'peak_rating': self.peak_rating,
            'games_played': self.games_played,
            'wins': self.wins,
            'losses': self.losses,
            'draws': self.draws,
        }


class RatingChange(db.Model):
    __tablename__ = 'rating_changes'

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(db.Integer, db.ForeignKey('rating_records.id'), nullable=False)
    session_id = db.Column(db.String(100), nullable=False, index=True)
    participant_id = db.Column(db.String(100), nullable=False, index=True)
    old_rating = db.Column(db.Integer, nullable=False)
    new_rating = db.Column(db.Integer, nullable=False)
    rating_change = db.Column(db.Integer, nullable=False)
    game_type = db.Column(db.String(50), nullable=True, index=True)
    result = db.Column(db.String(20), nullable=False)  # win, loss, draw, forfeit, timeout, disconnect
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    record = db.relationship('RatingRecord', back_populates='changes')

    __table_args__ = (
        db.UniqueConstraint('session_id', 'participant_id', name='unique_change_per_session'),
    )

    def to_dict(self):
        return {
            'session_id': self.session_id,
            'participant_id': self.participant_id,
            'old_rating': self.old_rating,
            'new_rating': self.new_rating,
            'rating_change': self.rating_change,
            'game_type': self.game_type,
            'result': self.result,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class MatchRecord(db.Model):
    __tablename__ = 'match_records'

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(100), unique=True, nullable=False, index=True)
    game_type = db.Column(db.String(50), nullable=False)
    match_type = db.Column(db.String(20), nullable=False, default='casual')
    outcome = db.Column(db.String(20), nullable=False)
    winner_id = db.Column(db.String(100), nullable=True)
    participants = db.Column(db.JSON, nullable=False, default=list)
    duration_seconds = db.Column(db.Integer, default=0)
    move_count = db.Column(db.Integer, default=0)
    average_skill = db.Column(db.Integer, nullable=True)
    rating_status = db.Column(db.String(20), nullable=False, default='unrated')  # unrated, applied
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'session_id': self.session_id,
            'game_type': self.game_type,
            'match_type': self.match_type,
            'outcome': self.outcome,
            'winner_id': self.winner_id,
            'participants': self.participants,
            'duration_seconds': self.duration_seconds,
            'move_count': self.move_count,
            'average_skill': self.average_skill,
            'rating_status': self.rating_status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
