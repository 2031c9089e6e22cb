import logging
import queue
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout

from raftcore import config
from raftcore.messaging import Message, Propose, ProposeResult, RejectReason
from raftcore.network import PeerTimeout, RpcListener
from raftcore.storage import StorageError


class RaftController:
    """Drives a RaftServer from a single event-loop thread.

    Ticks, inbound requests and responses to outbound requests all become events on one queue, so the server
    never sees two of them at the same time. Outbound requests run on a thread pool with at most one call in
    flight per peer; a newer request for a busy peer replaces any request still waiting for that peer.
    """

    def __init__(
        self,
        server_no,
        machine,
        transport,
        listen_address=None,
        tick_interval=config.TICK_INTERVAL,
        rpc_timeout=config.RPC_TIMEOUT,
        proposal_timeout=config.CLIENT_TIMEOUT,
    ):
        self._logger = logging.getLogger(f"RaftController-{server_no}")
        self._events = queue.Queue()
        self._machine = machine
        self._transport = transport
        self.server_no = server_no
        self.tick_interval = tick_interval
        self.rpc_timeout = rpc_timeout
        self.proposal_timeout = proposal_timeout

        self._listener = RpcListener(server_no, listen_address, self.handle_rpc) if listen_address else None
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, len(machine.peers)), thread_name_prefix=f"RaftController-{server_no}-rpc"
        )
        self._stop_signal = threading.Event()
        self._threads = {}

        # Only touched from the event loop
        self._in_flight = set()
        self._queued = {}
        self._waiting_proposals = {}
        # results of entries applied while a proposal is being handled, keyed by index
        self._applied_during_rpc = None

        # keep whatever the applier was already reporting to
        self._forward_applied = machine.applier.on_apply
        self._machine.applier.on_apply = self._proposal_applied

    @property
    def machine(self):
        return self._machine

    def start(self):
        if self._listener is not None:
            self._logger.info("starting rpc listener")
            self._listener.start()
        self._logger.info("starting event loop")
        self._threads['event-loop'] = threading.Thread(
            target=self._event_loop,
            daemon=True,
            name=f"RaftController-{self.server_no}-event-loop",
        )
        self._logger.info("starting ticker")
        self._threads['ticker'] = threading.Thread(
            target=self._ticker,
            daemon=True,
            name=f"RaftController-{self.server_no}-ticker",
        )
        for thread in self._threads.values():
            thread.start()

    def stop(self):
        if self._stop_signal.is_set():
            return
        self._logger.info("stopping")
        self._stop_signal.set()
        self._events.put(("stop",))
        if self._listener is not None:
            self._listener.stop()
        self._executor.shutdown(wait=False)
        self._transport.close()

    def healthy(self):
        if self._stop_signal.is_set() or self._machine.stopped:
            return False
        for thread in self._threads.values():
            if not thread.is_alive():
                return False
        return True

    def handle_rpc(self, message):
        """Called from listener threads, blocks until the event loop has an answer or gives up"""
        future = Future()
        self._events.put(("rpc", message, future))
        timeout = self.proposal_timeout if isinstance(message.content, Propose) else self.rpc_timeout
        try:
            return future.result(timeout=timeout)
        except (FuturesTimeout, CancelledError):
            self._logger.debug(f"no answer for {message} within {timeout}s")
            return None

    def propose(self, command):
        reply = self.handle_rpc(Message(sender=self.server_no, recipient=self.server_no, content=Propose(command)))
        return reply.content if reply is not None else None

    def _ticker(self):
        while not self._stop_signal.is_set():
            time.sleep(self.tick_interval)
            self._events.put(("tick",))

    def _event_loop(self):
        while not self._stop_signal.is_set():
            evt, *args = self._events.get()
            self._logger.debug("Event %r %r", evt, args)

            try:
                if evt == "tick":
                    self._machine.tick()
                elif evt == "rpc":
                    self._handle_rpc_event(*args)
                elif evt == "response":
                    self._handle_response_event(*args)
                elif evt == "stop":
                    break
                else:
                    raise RuntimeError(f"Unknown event {evt}")
                self._flush_outbox()
            except StorageError:
                self._logger.critical("durable storage failed, stopping this server")
                self.stop()
                break

        for _, _, future in self._waiting_proposals.values():
            future.cancel()

    def _handle_rpc_event(self, message, future):
        self._applied_during_rpc = {}
        try:
            reply = self._machine.handle_message(message)
            applied = self._applied_during_rpc
        except (ValueError, TypeError) as e:
            self._logger.warning(f"dropping malformed request {message!r} from {message.sender}: {e}")
            future.cancel()
            return
        finally:
            self._applied_during_rpc = None
        if reply is None:
            future.cancel()
            return

        content = reply.content
        if isinstance(content, ProposeResult) and content.accepted:
            if content.index in applied:
                # committed straight away, e.g. a single server cluster
                reply = Message(reply.sender, reply.recipient, content._replace(result=applied[content.index]))
                future.set_result(reply)
                return
            self._waiting_proposals[content.index] = (content.term, reply, future)
            return
        future.set_result(reply)

    def _proposal_applied(self, entry, result):
        if self._forward_applied is not None:
            self._forward_applied(entry, result)

        try:
            term, reply, future = self._waiting_proposals.pop(entry.index)
        except KeyError:
            if self._applied_during_rpc is not None:
                self._applied_during_rpc[entry.index] = result
            return

        if term == entry.term:
            reply = Message(reply.sender, reply.recipient, reply.content._replace(result=result))
        else:
            # a later leader overwrote the proposed entry before it committed
            reply = Message(
                reply.sender,
                reply.recipient,
                reply.content._replace(
                    accepted=False, leader_hint=self._machine.leader_id, reason=RejectReason.NOT_LEADER
                ),
            )
        if not future.done():
            future.set_result(reply)

    def _handle_response_event(self, message, call):
        peer = message.recipient
        self._in_flight.discard(peer)
        try:
            response = call.result()
        except PeerTimeout as e:
            self._logger.debug(f"{type(message.content).__name__} to {peer} got no response: {e}")
        except Exception as e:
            self._logger.debug(f"{type(message.content).__name__} to {peer} failed: {e!r}")
        else:
            try:
                self._machine.handle_response(message, response.content)
            except (ValueError, TypeError, AttributeError) as e:
                self._logger.warning(f"dropping malformed response from {peer} to {message}: {e}")

        if peer in self._queued:
            self._dispatch(self._queued.pop(peer))

    def _flush_outbox(self):
        while True:
            try:
                message = self._machine.outbox.get(False)
            except queue.Empty:
                return
            if message.recipient in self._in_flight:
                self._queued[message.recipient] = message
            else:
                self._dispatch(message)

    def _dispatch(self, message):
        if self._stop_signal.is_set():
            return
        self._in_flight.add(message.recipient)
        call = self._executor.submit(self._transport.call, message.recipient, message, self.rpc_timeout)
        call.add_done_callback(lambda done: self._events.put(("response", message, done)))
