"""Linear undo/redo history over immutable snapshots."""
from typing import Callable, Generic, List, TypeVar, Union

T = TypeVar("T")


class History(Generic[T]):
    """Keeps past / present / future snapshots.

    Snapshots are treated as values: callers never mutate the present,
    they hand in a replacement (or a function producing one). Pushing a
    value equal to the present is ignored so no-op edits do not pile up
    undo entries.
    """

    def __init__(self, initial: T):
        self.past: List[T] = []
        self.present: T = initial
        self.future: List[T] = []

    def set_state(self, new_state: Union[T, Callable[[T], T]]) -> None:
        next_state = new_state(self.present) if callable(new_state) else new_state
        if next_state == self.present:
            return
        self.past = self.past + [self.present]
        self.present = next_state
        self.future = []

    def undo(self) -> None:
        if not self.past:
            return
        self.future = [self.present] + self.future
        self.present = self.past[-1]
        self.past = self.past[:-1]

    def redo(self) -> None:
        if not self.future:
            return
        self.past = self.past + [self.present]
        self.present = self.future[0]
        self.future = self.future[1:]

    @property
    def can_undo(self) -> bool:
        return len(self.past) > 0

    @property
    def can_redo(self) -> bool:
        return len(self.future) > 0

    @property
    def history_length(self) -> int:
        return len(self.past)
