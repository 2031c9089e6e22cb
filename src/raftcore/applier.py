import logging

from raftcore import storage


class Applier:
    """Feeds committed log entries to a state machine, in log order, once each.

    When a path is given the applied index is persisted after every entry. The entry is applied before the
    index is written, so a crash in between replays that entry on restart rather than skipping it.
    """

    def __init__(self, state_machine, path=None, on_apply=None, server_id=None):
        self._logger = logging.getLogger(f"Applier-{server_id}")
        self._state_machine = state_machine
        self.path = path
        self.on_apply = on_apply
        self.last_applied = storage.load(path, default=0) if path is not None else 0

    def apply_committed(self, log, commit_index):
        while self.last_applied < commit_index:
            entry = log.entry_at(self.last_applied + 1)
            if entry is None:
                raise ValueError(
                    f"commit index {commit_index} is beyond the last log index {log.last_index}"
                )

            self._logger.debug(f"applying entry {entry.index} of term {entry.term}")
            try:
                result = self._state_machine.apply(entry.command)
            except ValueError as e:
                # every replica rejects the same command, the rejection is its result
                self._logger.warning(f"entry {entry.index} was rejected by the state machine: {e}")
                result = e
            self.last_applied = entry.index
            if self.path is not None:
                storage.atomic_dump(self.path, self.last_applied)

            if self.on_apply is not None:
                self.on_apply(entry, result)

        return self.last_applied
