import queue
import random

import pytest
from raftcore.clock import ManualClock
from raftcore.log import Log, LogEntry
from raftcore.server import RaftServer, Role
from raftcore.state_machine import LoggerStateMachine


def make_server(server_id, num_servers, clock, **kwargs):
    kwargs.setdefault("state_machine", LoggerStateMachine(server_id))
    return RaftServer(
        server_id=server_id,
        peers=list(range(num_servers)),
        clock=clock,
        rng=random.Random(server_id),
        **kwargs
    )


def drain(server):
    """Everything the server queued for its peers so far"""
    messages = []
    while True:
        try:
            messages.append(server.outbox.get(False))
        except queue.Empty:
            return messages


def entries(*terms, start=1):
    return [LogEntry(index=start + offset, term=term, command=str(start + offset)) for offset, term in enumerate(terms)]


class Cluster:
    """Servers sharing one manual clock, with synchronous message delivery.

    Messages between servers that are partitioned from each other are dropped, which the sender sees the same way
    it would see a timeout. Safety properties are checked after every delivery round.
    """

    def __init__(self, num_servers, tick=0.010):
        self.clock = ManualClock()
        self.tick_interval = tick
        self.state_machines = {i: LoggerStateMachine(i) for i in range(num_servers)}
        self.servers = {
            i: make_server(i, num_servers, self.clock, state_machine=self.state_machines[i])
            for i in range(num_servers)
        }
        self.groups = None
        self.leader_by_term = {}
        self.committed = {}
        self._leader_logs = {}

    def __getitem__(self, server_id):
        return self.servers[server_id]

    def partition(self, *groups):
        self.groups = [set(group) for group in groups]

    def heal(self):
        self.groups = None

    def connected(self, a, b):
        if self.groups is None:
            return True
        return any(a in group and b in group for group in self.groups)

    def deliver(self):
        delivered = True
        while delivered:
            delivered = False
            for server in self.servers.values():
                for message in drain(server):
                    delivered = True
                    if not self.connected(message.sender, message.recipient):
                        continue
                    reply = self.servers[message.recipient].handle_message(message)
                    if reply is not None:
                        server.handle_response(message, reply.content)
            self.check_invariants()

    def step(self):
        self.clock.advance(self.tick_interval)
        for server in self.servers.values():
            server.tick()
        self.deliver()

    def run_for(self, seconds):
        for _ in range(round(seconds / self.tick_interval)):
            self.step()

    def run_until(self, predicate, timeout):
        """Steps until predicate holds, returning the simulated time it took"""
        start = self.clock.now()
        while not predicate():
            if self.clock.now() - start > timeout:
                raise AssertionError(f"condition not reached within {timeout}s of simulated time")
            self.step()
        return self.clock.now() - start

    def leaders(self, among=None):
        among = self.servers if among is None else among
        return [self.servers[i] for i in among if self.servers[i].role == Role.LEADER]

    def elect(self, server_id):
        """Has server_id win an election right away, assuming the others will vote for it"""
        self.servers[server_id].become_candidate()
        self.deliver()
        assert self.servers[server_id].role == Role.LEADER
        return self.servers[server_id]

    def check_invariants(self):
        servers = list(self.servers.values())

        # Election safety
        for leader in self.leaders():
            assert self.leader_by_term.setdefault(leader.term, leader.server_id) == leader.server_id

        # Leader append-only
        for leader in self.leaders():
            key = (leader.server_id, leader.term)
            previous = self._leader_logs.get(key, [])
            current = list(leader.log)
            assert current[:len(previous)] == previous
            self._leader_logs[key] = current

        # Log matching
        for i, a in enumerate(servers):
            for b in servers[i + 1:]:
                shared = min(a.log.last_index, b.log.last_index)
                for index in range(shared, 0, -1):
                    if a.log.term_at(index) == b.log.term_at(index):
                        assert a.log.entries_from(1, index) == b.log.entries_from(1, index)
                        break

        # Committed entries never change, and every leader of a later term holds them
        for server in servers:
            for entry in server.log.entries_from(1, server.commit_index):
                committed, _ = self.committed.setdefault(entry.index, (entry, server.term))
                assert committed == entry
        for leader in self.leaders():
            for index, (entry, seen_in_term) in self.committed.items():
                if leader.term > seen_in_term:
                    assert leader.log.entry_at(index) == entry


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def no_network_raft_follower(clock):
    return make_server(1, 3, clock)


@pytest.fixture
def no_network_raft_leader(clock):
    server = make_server(0, 3, clock)
    server.term = 1
    server.become_leader()
    drain(server)
    return server


@pytest.fixture
def log_entry():
    return LogEntry(index=1, term=1, command="x=1")


@pytest.fixture
def filled_log():
    log = Log.from_entries(entries(1, 1, 1, 2, 2, 2))

    assert log.last_index == 6
    return log


@pytest.fixture
def no_network_raft_leader_with_log(clock, filled_log):
    server = make_server(0, 3, clock, log=filled_log)
    server.term = 3
    server.become_leader()
    drain(server)
    return server


@pytest.fixture
def raft_cluster():
    return Cluster
