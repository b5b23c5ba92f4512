from typing import List, Optional

from .base import GameEnd

WIN_PATTERNS = [
    (0, 1, 2), (3, 4, 5), (6, 7, 8),  # rows
    (0, 3, 6), (1, 4, 7), (2, 5, 8),  # columns
    (0, 4, 8), (2, 4, 6),             # diagonals
]

SYMBOLS = ('X', 'O')


class TicTacToeRules:
    game_type = 'tictactoe'
    name = 'Tic Tac Toe'
    min_players = 2
    max_players = 2

    def create_initial_state(self, participants: List[str], config: dict = None) -> dict:
        return {
            'board': [None] * 9,
            'symbols': {pid: SYMBOLS[i] for i, pid in enumerate(participants)},
            'move_count': 0,
            'last_move': None,
        }

    def is_legal(self, state: dict, participant_id: str, move) -> bool:
        if participant_id not in state['symbols']:
            return False
        if not isinstance(move, dict):
            return False
        position = move.get('position')
        if not isinstance(position, int) or isinstance(position, bool):
            return False
        if position < 0 or position > 8:
            return False
        return state['board'][position] is None

    def apply(self, state: dict, participant_id: str, move: dict) -> dict:
        board = list(state['board'])
        board[move['position']] = state['symbols'][participant_id]
        return {
            'board': board,
            'symbols': state['symbols'],
            'move_count': state['move_count'] + 1,
            'last_move': {'participant_id': participant_id, 'position': move['position']},
        }

    def check_end(self, state: dict) -> Optional[GameEnd]:
        board = state['board']
        for a, b, c in WIN_PATTERNS:
            if board[a] and board[a] == board[b] == board[c]:
                winner = next(pid for pid, sym in state['symbols'].items() if sym == board[a])
                return GameEnd('win', winner, 'three in a row')

        if all(cell is not None for cell in board):
            return GameEnd('draw', None, 'board full')

        return None

    def public_view(self, state: dict) -> dict:
        return {
            'board': list(state['board']),
            'symbols': dict(state['symbols']),
            'last_move': state['last_move'],
        }
