import logging
import uuid
from socket import AF_INET, SOCK_STREAM, socket

from raftcore import config
from raftcore.messaging import (
    ClientDisconnected,
    DelValue,
    GetValue,
    Message,
    Propose,
    SetValue,
    recv_message,
    send_message,
)


class NoConnectionError(Exception):
    pass


class DistDict:
    """Dictionary-like client whose writes and reads go through the replicated log"""

    def __init__(self, server_config, timeout=config.CLIENT_TIMEOUT, max_attempts=None):
        self._logger = logging.getLogger("DistDict")
        self.server_config = server_config
        self.client_id = str(uuid.uuid1())
        self.timeout = timeout
        self.max_attempts = max_attempts if max_attempts is not None else 2 * len(server_config)
        self._cached_sock = None
        self._leader_no = None

    def _connect_server(self, server_no):
        s = socket(AF_INET, SOCK_STREAM)
        s.settimeout(1)
        s.connect(self.server_config[server_no])
        s.settimeout(self.timeout)
        return s

    def _request_id(self):
        return str(uuid.uuid1())

    def _candidates(self):
        if self._leader_no is not None:
            yield self._leader_no
        while True:
            yield from self.server_config

    def _drop_connection(self):
        if self._cached_sock is not None:
            self._cached_sock.close()
        self._cached_sock = None

    def _propose_to(self, server_no, command):
        if self._cached_sock is None or self._leader_no != server_no:
            self._drop_connection()
            self._cached_sock = self._connect_server(server_no)
            self._leader_no = server_no

        message = Message(sender=self.client_id, recipient=server_no, content=Propose(command))
        send_message(self._cached_sock, bytes(message))
        return Message.from_bytes(recv_message(self._cached_sock)).content

    def send(self, command):
        candidates = self._candidates()
        server_no = next(candidates)
        for _ in range(self.max_attempts):
            try:
                result = self._propose_to(server_no, command)
            except (OSError, ClientDisconnected) as e:
                self._logger.debug(f"could not reach server {server_no}: {e!r}")
                self._drop_connection()
                self._leader_no = None
                server_no = next(candidates)
                continue

            if result.accepted:
                return result.result

            self._logger.debug(f"server {server_no} was not the leader, hint: {result.leader_hint}")
            self._leader_no = None
            server_no = result.leader_hint if result.leader_hint is not None else next(candidates)

        raise NoConnectionError(f"couldn't get a command accepted after {self.max_attempts} attempts")

    def __setitem__(self, key, value):
        self.send(SetValue(request_id=self._request_id(), key=key, value=value))

    def __getitem__(self, item):
        return self.send(GetValue(request_id=self._request_id(), key=item))

    def __delitem__(self, key):
        self.send(DelValue(request_id=self._request_id(), key=key))

    def close(self):
        self._drop_connection()
