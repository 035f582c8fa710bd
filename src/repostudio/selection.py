"""Multi-select list state machine.

`apply()` is a pure function: given the current `SelectionState`, the
currently displayed (filtered, sorted) sequence of file ids and an action, it
returns the next state. Indices always refer to positions in the displayed
sequence.

Rules by action:

- RANGE (shift-click): anchor is the existing anchor, or the target when none
  is set; the selection is the inclusive slice between anchor and target.
  The anchor is kept, ``last_index`` moves to the target.
- TOGGLE (ctrl/cmd-click): removes the target if selected, otherwise appends
  it. Adding into an empty selection resets the anchor to the target.
- CLICK: singleton selection; anchor and last both move to the target.
- SELECT_ALL / DESELECT_ALL: everything / nothing. Deselect clears both
  indices so a later range starts from its own target.
- MOVE_UP / MOVE_DOWN: target is ``last_index`` ± 1 clamped to the list, then
  RANGE when shift is held, otherwise CLICK.

An empty displayed sequence makes every action a no-op.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple


class SelectionAction(str, Enum):
    CLICK = "click"
    TOGGLE = "toggle"
    RANGE = "range"
    SELECT_ALL = "select_all"
    DESELECT_ALL = "deselect_all"
    MOVE_UP = "move_up"
    MOVE_DOWN = "move_down"


@dataclass(frozen=True)
class Modifiers:
    """Keyboard modifiers held during a pointer click."""

    ctrl: bool = False
    meta: bool = False
    shift: bool = False

    def click_action(self) -> SelectionAction:
        if self.shift:
            return SelectionAction.RANGE
        if self.ctrl or self.meta:
            return SelectionAction.TOGGLE
        return SelectionAction.CLICK


@dataclass(frozen=True)
class SelectionState:
    selected: Tuple[str, ...] = ()
    anchor_index: Optional[int] = None
    last_index: Optional[int] = None

    def is_selected(self, file_id: str) -> bool:
        return file_id in self.selected

    def __len__(self) -> int:
        return len(self.selected)


EMPTY = SelectionState()


def _clamp(index: int, length: int) -> int:
    return max(0, min(index, length - 1))


def _range(state: SelectionState, displayed: Sequence[str], target: int) -> SelectionState:
    anchor = target if state.anchor_index is None else _clamp(state.anchor_index, len(displayed))
    lo, hi = min(anchor, target), max(anchor, target)
    return SelectionState(
        selected=tuple(displayed[lo : hi + 1]),
        anchor_index=anchor,
        last_index=target,
    )


def _toggle(state: SelectionState, displayed: Sequence[str], target: int) -> SelectionState:
    file_id = displayed[target]
    if file_id in state.selected:
        return SelectionState(
            selected=tuple(i for i in state.selected if i != file_id),
            anchor_index=state.anchor_index,
            last_index=target,
        )
    anchor = target if not state.selected else state.anchor_index
    return SelectionState(
        selected=state.selected + (file_id,),
        anchor_index=anchor,
        last_index=target,
    )


def _click(displayed: Sequence[str], target: int) -> SelectionState:
    return SelectionState(selected=(displayed[target],), anchor_index=target, last_index=target)


def apply(
    state: SelectionState,
    displayed: Sequence[str],
    action: SelectionAction,
    target: Optional[int] = None,
    *,
    shift: bool = False,
) -> SelectionState:
    """Compute the selection that results from `action`.

    `target` is required for CLICK, TOGGLE and RANGE and ignored otherwise.
    `shift` only matters for MOVE_UP / MOVE_DOWN.
    """
    n = len(displayed)
    if n == 0:
        return state

    if action is SelectionAction.SELECT_ALL:
        return SelectionState(selected=tuple(displayed), anchor_index=0, last_index=n - 1)
    if action is SelectionAction.DESELECT_ALL:
        return EMPTY

    if action in (SelectionAction.MOVE_UP, SelectionAction.MOVE_DOWN):
        base = state.last_index if state.last_index is not None else 0
        step = -1 if action is SelectionAction.MOVE_UP else 1
        idx = _clamp(base + step, n)
        if shift:
            return _range(state, displayed, idx)
        return _click(displayed, idx)

    if target is None:
        raise ValueError(f"{action.value} requires a target index")
    idx = _clamp(target, n)

    if action is SelectionAction.RANGE:
        return _range(state, displayed, idx)
    if action is SelectionAction.TOGGLE:
        return _toggle(state, displayed, idx)
    return _click(displayed, idx)


def added_ids(before: SelectionState, after: SelectionState) -> List[str]:
    """Ids present in `after` but not in `before`, in `after` order."""
    prior = set(before.selected)
    return [i for i in after.selected if i not in prior]


__all__ = [
    "SelectionAction",
    "Modifiers",
    "SelectionState",
    "EMPTY",
    "apply",
    "added_ids",
]
