from typing import List, Optional

from .base import GameEnd

DIRECTIONS = [(0, 1), (1, 0), (1, 1), (1, -1)]


class ConnectFourRules:
    game_type = 'connect4'
    name = 'Connect Four'
    min_players = 2
    max_players = 2

    def __init__(self, rows: int = 6, cols: int = 7, connect: int = 4):
        self.rows = rows
        self.cols = cols
        self.connect = connect

    def create_initial_state(self, participants: List[str], config: dict = None) -> dict:
        return {
            # row 0 is the bottom of the grid
            'grid': [[None] * self.cols for _ in range(self.rows)],
            'colors': {pid: i + 1 for i, pid in enumerate(participants)},
            'last_move': None,
        }

    def _drop_row(self, grid, column: int) -> Optional[int]:
        for row in range(self.rows):
            if grid[row][column] is None:
                return row
        return None

    def is_legal(self, state: dict, participant_id: str, move) -> bool:
        if participant_id not in state['colors'] or not isinstance(move, dict):
            return False
        column = move.get('column')
        if not isinstance(column, int) or isinstance(column, bool):
            return False
        if column < 0 or column >= self.cols:
            return False
        return self._drop_row(state['grid'], column) is not None

    def apply(self, state: dict, participant_id: str, move: dict) -> dict:
        grid = [list(row) for row in state['grid']]
        column = move['column']
        row = self._drop_row(grid, column)
        grid[row][column] = state['colors'][participant_id]
        return {
            'grid': grid,
            'colors': state['colors'],
            'last_move': {'participant_id': participant_id, 'row': row, 'column': column},
        }

    def _count(self, grid, row, col, dr, dc, color) -> int:
        count = 0
        r, c = row + dr, col + dc
        while 0 <= r < self.rows and 0 <= c < self.cols and grid[r][c] == color:
            count += 1
            r += dr
            c += dc
        return count

    def check_end(self, state: dict) -> Optional[GameEnd]:
        last = state['last_move']
        if last is None:
            return None

        grid = state['grid']
        row, col = last['row'], last['column']
        color = grid[row][col]
        for dr, dc in DIRECTIONS:
            line = 1 + self._count(grid, row, col, dr, dc, color) + self._count(grid, row, col, -dr, -dc, color)
            if line >= self.connect:
                return GameEnd('win', last['participant_id'], f'{self.connect} in a row')

        if all(cell is not None for cell in grid[self.rows - 1]):
            return GameEnd('draw', None, 'grid full')

        return None

    def public_view(self, state: dict) -> dict:
        return {
            'grid': [list(row) for row in state['grid']],
            'colors': dict(state['colors']),
            'last_move': state['last_move'],
        }
