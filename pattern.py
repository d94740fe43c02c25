"""Fixed-length step pattern: instrument name -> one bool per sequencer step."""

from typing import Iterable, Mapping


class Pattern:
    """Read-only step grid. Every instrument row has exactly `length` steps."""

    __slots__ = ('_rows', '_length')

    def __init__(self, rows: Mapping[str, Iterable[bool]], length: int):
        length = int(length)
        if length <= 0:
            raise ValueError(f"pattern length must be positive, got {length}")
        frozen = {}
        for name, steps in rows.items():
            steps = tuple(bool(s) for s in steps)
            if len(steps) != length:
                raise ValueError(
                    f"instrument '{name}' has {len(steps)} steps, expected {length}"
                )
            frozen[str(name)] = steps
        self._rows = frozen
        self._length = length

    @classmethod
    def from_dict(cls, data: Mapping) -> 'Pattern':
        """Build from `{instrument: [bool, ...], 'length': L}`.

        When 'length' is absent it is taken from the rows, which must agree.
        """
        rows = {k: v for k, v in data.items() if k != 'length'}
        length = data.get('length')
        if length is None:
            lengths = {len(list(v)) for v in rows.values()}
            if len(lengths) != 1:
                raise ValueError("cannot infer pattern length from rows of differing length")
            length = lengths.pop()
        return cls(rows, length)

    @classmethod
    def empty(cls, length: int, instruments: Iterable[str]) -> 'Pattern':
        return cls({name: [False] * int(length) for name in instruments}, length)

    @property
    def length(self) -> int:
        return self._length

    @property
    def instruments(self) -> tuple[str, ...]:
        return tuple(self._rows)

    def steps(self, instrument: str) -> tuple[bool, ...]:
        return self._rows.get(instrument, (False,) * self._length)

    def is_active(self, instrument: str, step: int) -> bool:
        row = self._rows.get(instrument)
        if row is None or not 0 <= step < self._length:
            return False
        return row[step]

    def active_at(self, step: int) -> tuple[str, ...]:
        return tuple(name for name, row in self._rows.items() if 0 <= step < self._length and row[step])

    def total_active(self) -> int:
        return sum(sum(row) for row in self._rows.values())

    def to_dict(self) -> dict:
        data = {name: list(row) for name, row in self._rows.items()}
        data['length'] = self._length
        return data

    def __eq__(self, other) -> bool:
        if not isinstance(other, Pattern):
            return NotImplemented
        return self._length == other._length and self._rows == other._rows

    def __repr__(self) -> str:
        return f"Pattern(length={self._length}, instruments={list(self._rows)})"
