import random
import uuid

# Room names read like a seat in a games hall: "patient-knight-parlor-07"
TEMPERAMENTS = [
    'patient', 'reckless', 'wary', 'stubborn', 'sly', 'calm', 'restless', 'gambling',
    'steady', 'hasty', 'careful', 'cheeky', 'stoic', 'plucky', 'sneaky', 'sharp',
    'sleepy', 'grumpy', 'jolly', 'wily', 'earnest', 'nimble', 'tidy', 'curious',
]

PIECES = [
    'pawn', 'knight', 'bishop', 'rook', 'queen', 'king', 'checker', 'domino',
    'meeple', 'token', 'marble', 'counter', 'die', 'card', 'stone', 'peg',
    'tile', 'disc', 'dragon', 'jester', 'joker', 'wizard', 'ace', 'gambit',
]

VENUES = [
    'parlor', 'lounge', 'table', 'corner', 'cellar', 'attic', 'hall', 'den',
    'porch', 'booth', 'alcove', 'annex',
]

TABLE_NUMBERS = 100


def generate_room_name(rng=random) -> str:
    """Friendly room name like ``patient-knight-parlor-07``."""
    return "-".join([
        rng.choice(TEMPERAMENTS),
        rng.choice(PIECES),
        rng.choice(VENUES),
        f"{rng.randrange(TABLE_NUMBERS):02d}",
    ])


def generate_session_id(prefix: str = "") -> str:
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}" if prefix else short
