import logging

from raftcore.messaging import DelValue, GetValue, NoOp, SetValue


class LoggerStateMachine:
    """Keeps every applied command in order, for checking what a node applied"""

    def __init__(self, server_id):
        self._logger = logging.getLogger(f"LoggerStateMachine-{server_id}")
        self.applied = []

    def apply(self, command):
        self._logger.info(f"applied #{len(self.applied) + 1}: {command}")
        self.applied.append(command)


class KVStateMachine:
    """In-memory dictionary driven by SetValue/DelValue/GetValue commands.

    ``apply`` returns what a client asked for: the current value for a get, the removed value for a delete.
    """

    def __init__(self, server_id):
        self._logger = logging.getLogger(f"KVStateMachine-{server_id}")
        self._data = {}
        self._operations = {
            SetValue: self._set,
            DelValue: self._delete,
            GetValue: self._get,
            NoOp: lambda command: None,
        }

    def apply(self, command):
        try:
            operation = self._operations[type(command)]
        except KeyError:
            raise ValueError(f"unknown command {command!r}, expected one of {list(self._operations)}")
        return operation(command)

    def _set(self, command):
        self._logger.debug(f"{command.request_id}: set {command.key!r}")
        self._data[command.key] = command.value

    def _delete(self, command):
        self._logger.debug(f"{command.request_id}: delete {command.key!r}")
        return self._data.pop(command.key, None)

    def _get(self, command):
        return self._data.get(command.key)

    def __contains__(self, key):
        return key in self._data

    def __len__(self):
        return len(self._data)
