import logging
import pickle
import threading
from socket import AF_INET, SO_REUSEADDR, SOCK_STREAM, SOL_SOCKET, socket

from raftcore import config
from raftcore.messaging import (
    AppendEntries,
    ClientDisconnected,
    Message,
    RequestVote,
    recv_message,
    send_message,
)


class PeerTimeout(Exception):
    """No response from a peer this round, whether it crashed, is partitioned away or is just slow"""


class Transport:
    """Request/response channel to the other servers of the cluster"""

    def call(self, peer, message, timeout=config.RPC_TIMEOUT):
        raise NotImplementedError

    def send_request_vote(self, peer, request: RequestVote, timeout=config.RPC_TIMEOUT):
        return self._call_content(peer, request, timeout)

    def send_append_entries(self, peer, request: AppendEntries, timeout=config.RPC_TIMEOUT):
        return self._call_content(peer, request, timeout)

    def _call_content(self, peer, request, timeout):
        message = Message(sender=self.server_id, recipient=peer, content=request)
        return self.call(peer, message, timeout).content

    def close(self):
        pass


class SocketTransport(Transport):
    """TCP client keeping one cached connection per peer, used by one caller per peer at a time"""

    def __init__(self, server_id, server_config):
        self.server_id = server_id
        self._logger = logging.getLogger(f"SocketTransport-{server_id}")
        self._server_config = server_config
        self._connections = {}
        self._locks = {peer: threading.Lock() for peer in server_config}

    def _connect(self, peer, timeout):
        s = socket(AF_INET, SOCK_STREAM)
        s.settimeout(timeout)
        s.connect(self._server_config[peer])
        self._logger.debug(f"connected to server {peer} at {self._server_config[peer]}")
        return s

    def call(self, peer, message, timeout=config.RPC_TIMEOUT):
        if peer == self.server_id:
            raise ValueError(f"server {peer} tried to send message to self")

        with self._locks[peer]:
            try:
                s = self._connections.get(peer)
                if s is None:
                    s = self._connect(peer, timeout)
                    self._connections[peer] = s
                s.settimeout(timeout)
                send_message(s, bytes(message))
                return Message.from_bytes(recv_message(s))
            except (OSError, ClientDisconnected, pickle.UnpicklingError, EOFError, ValueError) as e:
                # socket.timeout is an OSError. Either way the connection can't be trusted to be in sync anymore.
                self._drop(peer)
                raise PeerTimeout(f"no response from server {peer}: {e!r}") from e

    def _drop(self, peer):
        s = self._connections.pop(peer, None)
        if s is not None:
            s.close()

    def close(self):
        for peer in list(self._connections):
            with self._locks[peer]:
                self._drop(peer)


class RpcListener:
    """Accepts connections and answers every request on it with whatever ``handler`` returns for it.

    A handler returning None leaves the request unanswered, the caller will see a timeout.
    """

    def __init__(self, server_id, address, handler):
        self.server_id = server_id
        self.host, self.port = address
        self._handler = handler
        self._logger = logging.getLogger(f"RpcListener-{server_id}")
        self._sock = None
        self._running = threading.Event()

    @property
    def address(self):
        return self._sock.getsockname() if self._sock is not None else (self.host, self.port)

    def start(self):
        self._sock = socket(AF_INET, SOCK_STREAM)
        self._sock.setsockopt(SOL_SOCKET, SO_REUSEADDR, True)
        self._sock.bind((self.host, self.port))
        self._sock.listen()
        self._running.set()
        self._logger.info(f"Server {self.server_id} running at {self.address[0]}:{self.address[1]}")

        threading.Thread(
            target=self._accept_clients,
            daemon=True,
            name=f"server_{self.server_id}_listener",
        ).start()

    def stop(self):
        self._running.clear()
        if self._sock is not None:
            self._sock.close()

    def _accept_clients(self):
        while self._running.is_set():
            try:
                client, addr = self._sock.accept()
            except OSError:
                if self._running.is_set():
                    self._logger.exception("listener socket failed")
                return
            self._logger.debug(f"connection received from {addr}")

            threading.Thread(
                target=self._handle_client,
                args=(client,),
                daemon=True,
                name=f"server_{self.server_id}_{addr}_handler",
            ).start()

    def _handle_client(self, client):
        with client:
            while self._running.is_set():
                try:
                    raw_msg = recv_message(client)
                except (ClientDisconnected, OSError):
                    return
                try:
                    msg = Message.from_bytes(raw_msg)
                except (pickle.UnpicklingError, EOFError, ValueError, TypeError) as e:
                    self._logger.warning(f"closing connection that sent an unreadable message: {e!r}")
                    return
                self._logger.debug(f"received message of {len(raw_msg)} bytes from {msg.sender}")

                reply = self._handler(msg)
                if reply is None:
                    continue
                try:
                    send_message(client, bytes(reply))
                except OSError:
                    return
