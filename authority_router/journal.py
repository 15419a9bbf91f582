"""Append-only journal of privileged action state transitions.

Multisig proposals and timelock actions complete in a later invocation,
often by a different operator. Each transition is written as one JSON line so
that a later run can find actions that were queued but never executed and
replay them with the exact tuple that was queued.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import RouterError

_LOGGER = logging.getLogger(__name__)

_JOURNAL_VERSION = "authority-router.journal.v1"


class JournalError(RouterError):
    """Raised when the journal cannot be read back."""


class ActionKind(str, Enum):
    DIRECT = "direct"
    MULTISIG = "multisig"
    TIMELOCK = "timelock"


class ActionState(str, Enum):
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    QUEUED = "queued"
    EXECUTED = "executed"


class TransitionRecord(BaseModel):
    """One observed transition of a privileged action."""

    model_config = ConfigDict(use_enum_values=False)

    version: str = Field(default=_JOURNAL_VERSION)
    action_id: str
    kind: ActionKind
    state: ActionState
    chain_id: int
    reference: str
    phase: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    recorded_at: float = Field(default_factory=lambda: float(time.time()))


class ActionJournal:
    """Persist transition records to a JSON-lines file."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).resolve()
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def record(self, record: TransitionRecord) -> TransitionRecord:
        line = json.dumps(record.model_dump(mode="json"), sort_keys=True, ensure_ascii=False)
        with self._lock:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        _LOGGER.debug(
            "Journaled %s %s -> %s",
            record.kind.value,
            record.action_id,
            record.state.value,
        )
        return record

    def _iter_records(self) -> Iterator[TransitionRecord]:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as handle:
            for number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    yield TransitionRecord.model_validate(json.loads(line))
                except (json.JSONDecodeError, ValidationError) as exc:
                    raise JournalError(f"Corrupted journal line {number} in {self._path}: {exc}") from exc

    def records(self, action_id: Optional[str] = None) -> List[TransitionRecord]:
        with self._lock:
            entries = list(self._iter_records())
        if action_id is None:
            return entries
        return [entry for entry in entries if entry.action_id == action_id]

    def latest(self) -> Dict[str, TransitionRecord]:
        """Return the most recent record per action id."""

        latest: Dict[str, TransitionRecord] = {}
        for entry in self.records():
            latest[entry.action_id] = entry
        return latest

    def _latest_timelock(self, chain_id: Optional[int]) -> List[TransitionRecord]:
        entries = [
            entry
            for entry in self.latest().values()
            if entry.kind is ActionKind.TIMELOCK and (chain_id is None or entry.chain_id == chain_id)
        ]
        return sorted(entries, key=lambda entry: entry.recorded_at)

    def pending_timelock_actions(self, chain_id: Optional[int] = None) -> List[TransitionRecord]:
        """Timelock actions that still need a queue or execute from this process.

        Executions already handed to the Safe as proposals are excluded; see
        :meth:`proposed_timelock_executions`.
        """

        return [
            entry
            for entry in self._latest_timelock(chain_id)
            if entry.phase != "execute" and not (entry.state is ActionState.EXECUTED and entry.phase is None)
        ]

    def proposed_timelock_executions(self, chain_id: Optional[int] = None) -> List[TransitionRecord]:
        """Timelock executions waiting on Safe owners rather than on this process."""

        return [
            entry
            for entry in self._latest_timelock(chain_id)
            if entry.state is ActionState.PROPOSED and entry.phase == "execute"
        ]


__all__ = ["ActionJournal", "ActionKind", "ActionState", "JournalError", "TransitionRecord"]
