import logging
import queue
from contextlib import contextmanager
from enum import Enum
from functools import wraps

from raftcore import config
from raftcore.applier import Applier
from raftcore.clock import ElectionTimer, MonotonicClock
from raftcore.log import Log, LogDifferentTermError, LogEntry, LogNotCaughtUpError
from raftcore.messaging import (
    AppendEntries,
    AppendEntriesResponse,
    Message,
    NoOp,
    Propose,
    ProposeResult,
    RejectReason,
    RequestVote,
    RequestVoteResponse,
)
from raftcore.storage import MemoryHardStateStore, StorageError


class Role(Enum):
    LEADER = 1
    CANDIDATE = 2
    FOLLOWER = 3


def only(*roles, silent=False):
    def wrapper(func):
        @wraps(func)
        def impl(self, *args, **kwargs):
            if self.role not in roles:
                if not silent:
                    self._logger.info(
                        f"attempted to call {func.__name__} but current role is {self.role}, not in {roles}"
                    )
                return
            return func(self, *args, **kwargs)

        return impl

    return wrapper


class RaftServer:
    """The consensus state machine of a single node.

    Not thread safe: every call has to come from one serialized context, usually the controller's event loop.
    Requests for peers are put on ``outbox``; whoever delivers them feeds the answers back through
    ``handle_response``.
    """

    def __init__(
        self,
        server_id,
        peers,
        state_machine=None,
        log=None,
        hard_state=None,
        applier=None,
        clock=None,
        election_timeout=(config.ELECTION_TIMEOUT_MIN, config.ELECTION_TIMEOUT_MAX),
        heartbeat_interval=config.LEADER_HEARTBEAT,
        max_entries_per_message=config.MAX_ENTRIES_PER_MESSAGE,
        rng=None,
    ):
        if applier is None and state_machine is None:
            raise ValueError("either a state machine or an applier is required")

        self.server_id = server_id
        self._logger = logging.getLogger(f"RaftServer-{server_id}")
        self.peers = [peer for peer in peers if peer != server_id]
        self.num_servers = len(self.peers) + 1

        self.applier = applier if applier is not None else Applier(state_machine, server_id=server_id)
        self._clock = clock if clock is not None else MonotonicClock()
        self.heartbeat_interval = heartbeat_interval
        self.max_entries_per_message = max_entries_per_message

        # Persistent state
        self._hard_state = hard_state if hard_state is not None else MemoryHardStateStore()
        persisted = self._hard_state.load()
        self._term = persisted.term
        self.voted_for = persisted.voted_for
        self.log = log if log is not None else Log()

        # Volatile state
        self._commit_index = 0
        self.leader_id = None
        self.received_votes = set()
        self.role = Role.FOLLOWER
        self.outbox = queue.Queue()
        self.stopped = False
        self.election_timer = ElectionTimer(self._clock, *election_timeout, rng=rng)

        # volatile leader state
        self.next_index = None
        self.match_index = None
        self._next_heartbeat = None

        self._logger.info(
            f"starting at term {self.term} with {self.log.last_index} log entries, voted for {self.voted_for}"
        )

    @property
    def quorum(self):
        return self.num_servers // 2 + 1

    @property
    def last_applied(self):
        return self.applier.last_applied

    @property
    def commit_index(self):
        return self._commit_index

    @commit_index.setter
    def commit_index(self, value):
        if value <= self._commit_index:
            return
        self._logger.debug(f"advancing commit index from {self._commit_index} to {value}")
        self._commit_index = value
        with self._durable():
            self.applier.apply_committed(self.log, value)

    @property
    def term(self):
        return self._term

    @term.setter
    def term(self, value):
        if value < self._term:
            raise ValueError(f"term can not go back from {self._term} to {value}")
        if value != self._term:
            self.voted_for = None
            self.leader_id = None
        self._term = value

    @contextmanager
    def _durable(self):
        try:
            yield
        except StorageError:
            if not self.stopped:
                self._logger.critical("could not persist state, no longer participating", exc_info=True)
            self.stopped = True
            raise

    def _persist(self):
        self._hard_state.save(self.term, self.voted_for)

    def _observe_term(self, term):
        if term > self.term:
            self._logger.info(f"saw higher term {term} (own term {self.term}), converting to follower")
            self.term = term
            self.become_follower()
            self._persist()

    def become_follower(self):
        previous_role = self.role
        self.role = Role.FOLLOWER
        self.received_votes = set()
        self.next_index = None
        self.match_index = None
        self._next_heartbeat = None
        if previous_role != Role.FOLLOWER:
            self._logger.info(f"Transitioned from {previous_role} to follower in term {self.term}")
            self.election_timer.reset()

    def become_candidate(self):
        with self._durable():
            self.role = Role.CANDIDATE
            self.term += 1
            self.voted_for = self.server_id
            self._persist()

        self._logger.info(f"Transitioned to candidate in term {self.term}")
        self.received_votes = {self.server_id}
        self.election_timer.reset()

        if len(self.received_votes) >= self.quorum:
            self.become_leader()
            return
        self.request_votes()

    def become_leader(self):
        self._logger.info(
            f"Transitioned to leader of term {self.term}, setting next_index to {self.log.last_index + 1}"
        )
        self.role = Role.LEADER
        self.leader_id = self.server_id
        self.received_votes = set()

        self.next_index = {peer: self.log.last_index + 1 for peer in self.peers}
        self.match_index = {peer: 0 for peer in self.peers}

        # Entries from earlier terms only commit once an entry of this term does
        self.leader_log_append(NoOp(request_id=f"leader-{self.server_id}-term-{self.term}"))
        self.broadcast_append_entries()

    @only(Role.CANDIDATE)
    def request_votes(self):
        for peer in self.peers:
            self._send(
                peer,
                RequestVote(
                    term=self.term,
                    candidate_id=self.server_id,
                    last_log_index=self.log.last_index,
                    last_log_term=self.log.last_term,
                ),
            )

    def tick(self):
        if self.stopped:
            return

        if self.role == Role.LEADER:
            if self._clock.now() >= self._next_heartbeat:
                self.broadcast_append_entries()
        elif self.election_timer.expired():
            self._logger.info(
                f"Election timeout of {self.election_timer.timeout:.3f}s reached as {self.role}"
            )
            self.become_candidate()

    @only(Role.LEADER, silent=True)
    def broadcast_append_entries(self):
        for peer in self.peers:
            self._send(peer, self._append_entries_msg(peer))
        self._next_heartbeat = self._clock.now() + self.heartbeat_interval

    @only(Role.LEADER)
    def leader_log_append(self, command):
        entry = LogEntry(index=self.log.last_index + 1, term=self.term, command=command)
        with self._durable():
            self.log.append([entry])
        self._update_committed_entries()
        return entry

    def propose(self, command):
        if self.stopped or self.role != Role.LEADER:
            return ProposeResult(
                accepted=False,
                leader_hint=self.leader_id,
                index=None,
                term=None,
                reason=RejectReason.NOT_LEADER,
                result=None,
            )

        entry = self.leader_log_append(command)
        self._logger.debug(f"appended client command at index {entry.index}")
        for peer in self.peers:
            self._send(peer, self._append_entries_msg(peer))
        return ProposeResult(
            accepted=True, leader_hint=self.server_id, index=entry.index, term=entry.term, reason=None, result=None
        )

    def handle_message(self, message: Message):
        """Handles an inbound request and returns the reply addressed to its sender"""
        if self.stopped:
            return None

        message_handlers = {
            RequestVote: self.handle_request_vote,
            AppendEntries: self.handle_append_entries,
            Propose: lambda content: self.propose(content.command),
        }
        self._logger.debug(f"Received {type(message.content).__name__} message from {message.sender}")

        try:
            handler = message_handlers[type(message.content)]
        except KeyError:
            raise ValueError(
                f"unknown request. expected {list(message_handlers.keys())}, got {type(message.content)}"
            )

        return message.reply(handler(message.content))

    def handle_request_vote(self, request: RequestVote):
        with self._durable():
            self._observe_term(request.term)

            if request.term < self.term:
                self._logger.info(
                    f"Vote request from {request.candidate_id} on term {request.term} while own term was {self.term}"
                )
                return RequestVoteResponse(term=self.term, vote_granted=False, reason=RejectReason.STALE_TERM)

            if self.voted_for not in (None, request.candidate_id):
                return RequestVoteResponse(term=self.term, vote_granted=False, reason=RejectReason.ALREADY_VOTED)

            if not self.log.is_up_to_date(request.last_log_index, request.last_log_term):
                self._logger.info(
                    f"candidate {request.candidate_id} log ends at ({request.last_log_index}, {request.last_log_term}) "
                    f"while own log ends at ({self.log.last_index}, {self.log.last_term})"
                )
                return RequestVoteResponse(term=self.term, vote_granted=False, reason=RejectReason.STALE_LOG)

            if self.voted_for != request.candidate_id:
                self.voted_for = request.candidate_id
                self._persist()

        self._logger.info(f"granted vote to {request.candidate_id} in term {self.term}")
        self.election_timer.reset()
        return RequestVoteResponse(term=self.term, vote_granted=True, reason=None)

    def handle_append_entries(self, request: AppendEntries):
        with self._durable():
            self._observe_term(request.term)

            if request.term < self.term:
                self._logger.info(f"rejecting AppendEntries from {request.leader_id} with stale term {request.term}")
                return AppendEntriesResponse(
                    term=self.term, success=False, match_index=self.log.last_index, reason=RejectReason.STALE_TERM
                )

            if self.role != Role.FOLLOWER:
                self._logger.info(f"received append entries call while current role was {self.role}")
                self.become_follower()

            self.leader_id = request.leader_id
            self.election_timer.reset()

            try:
                match_index = self.log.append_entries(
                    prev_log_index=request.prev_log_index,
                    prev_log_term=request.prev_log_term,
                    entries=list(request.entries),
                )
            except (LogNotCaughtUpError, LogDifferentTermError) as e:
                self._logger.debug(f"log mismatch at index {request.prev_log_index}: {e}")
                return AppendEntriesResponse(
                    term=self.term, success=False, match_index=self.log.last_index, reason=RejectReason.LOG_MISMATCH
                )

        # Take the min with the last index covered by this request: entries after it may still differ from the
        # leader's log, they only get truncated once a conflicting entry arrives.
        if request.leader_commit > self.commit_index:
            self.commit_index = min(request.leader_commit, match_index)

        return AppendEntriesResponse(term=self.term, success=True, match_index=match_index, reason=None)

    def handle_response(self, message: Message, response):
        """Folds in a peer's answer to ``message``, a request this server sent earlier"""
        if self.stopped:
            return

        response_handlers = {
            RequestVote: (RequestVoteResponse, self._handle_request_vote_response),
            AppendEntries: (AppendEntriesResponse, self._handle_append_entries_response),
        }
        request = message.content
        try:
            expected, handler = response_handlers[type(request)]
        except KeyError:
            raise ValueError(f"unknown request. expected {list(response_handlers.keys())}, got {type(request)}")
        if not isinstance(response, expected):
            raise ValueError(f"{type(request).__name__} needs a {expected.__name__}, got {type(response)}")

        with self._durable():
            self._observe_term(response.term)

        if request.term != self.term:
            self._logger.debug(f"discarding response to a request of term {request.term}, now at {self.term}")
            return

        handler(message.recipient, request, response)

    @only(Role.CANDIDATE, silent=True)
    def _handle_request_vote_response(self, peer, request, response):
        if not response.vote_granted:
            self._logger.info(f"did not get vote from server {peer} because {response.reason}")
            return

        self.received_votes.add(peer)
        if len(self.received_votes) >= self.quorum:
            self.become_leader()

    @only(Role.LEADER, silent=True)
    def _handle_append_entries_response(self, peer, request, response):
        if response.success:
            self.match_index[peer] = max(self.match_index[peer], response.match_index)
            self.next_index[peer] = max(self.next_index[peer], self.match_index[peer] + 1)
            self._update_committed_entries()

            if self.next_index[peer] <= self.log.last_index:
                self._send(peer, self._append_entries_msg(peer))
            return

        # Back off by one, or straight to the end of the follower's log when it is shorter
        new_try_index = max(
            self.match_index[peer] + 1,
            min(self.next_index[peer], request.prev_log_index, response.match_index + 1),
        )
        self._logger.info(
            f"AppendEntries to {peer} failed because {response.reason}, retrying with next index {new_try_index}"
        )
        self.next_index[peer] = new_try_index
        self._send(peer, self._append_entries_msg(peer))

    def _update_committed_entries(self):
        for index in range(self.log.last_index, self.commit_index, -1):
            entry_term = self.log.term_at(index)
            if entry_term < self.term:
                break
            replicated_on = 1 + sum(1 for peer in self.peers if self.match_index[peer] >= index)
            if replicated_on >= self.quorum:
                self.commit_index = index
                break

    @only(Role.LEADER)
    def _append_entries_msg(self, peer):
        next_index = self.next_index[peer]
        prev_log_index = next_index - 1
        entries = tuple(self.log.entries_from(next_index, self.max_entries_per_message))

        if entries:
            self._logger.debug(
                f"sending AppendEntries RPC to {peer} for index {next_index}-{entries[-1].index}/{self.log.last_index}"
            )

        return AppendEntries(
            term=self.term,
            leader_id=self.server_id,
            prev_log_index=prev_log_index,
            prev_log_term=self.log.term_at(prev_log_index),
            entries=entries,
            leader_commit=self.commit_index,
        )

    def _send(self, to, content):
        self.outbox.put(Message(sender=self.server_id, recipient=to, content=content))
