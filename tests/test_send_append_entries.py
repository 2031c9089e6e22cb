from raftcore.messaging import AppendEntries, AppendEntriesResponse, Message, RejectReason

from conftest import drain


def respond(leader, peer, response):
    request = Message(leader.server_id, peer, leader._append_entries_msg(peer))
    leader.handle_response(request, response)
    return request.content


def test_send_append_entries_first_round(no_network_raft_leader_with_log):
    receiver = 1
    result = no_network_raft_leader_with_log._append_entries_msg(receiver)
    assert result == AppendEntries(
        term=3,
        leader_id=0,
        prev_log_index=6,
        prev_log_term=2,
        entries=(no_network_raft_leader_with_log.log.entry_at(7),),
        leader_commit=0,
    )


def test_send_append_entries_fully_replicated(no_network_raft_leader_with_log):
    receiver = 1
    no_network_raft_leader_with_log.next_index[receiver] = 8
    result = no_network_raft_leader_with_log._append_entries_msg(receiver)
    assert result.entries == ()
    assert (result.prev_log_index, result.prev_log_term) == (7, 3)


def test_send_append_entries_not_leader(no_network_raft_follower):
    assert no_network_raft_follower._append_entries_msg(1) is None


def test_append_entries_failed_backs_off(no_network_raft_leader_with_log):
    leader = no_network_raft_leader_with_log
    match_index_before = dict(leader.match_index)

    respond(leader, 1, AppendEntriesResponse(term=3, success=False, match_index=6, reason=RejectReason.LOG_MISMATCH))

    assert leader.match_index == match_index_before
    assert leader.next_index == {1: 6, 2: 7}
    [retry] = drain(leader)
    assert retry.recipient == 1
    assert retry.content.prev_log_index == 5
    assert [entry.index for entry in retry.content.entries] == [6, 7]


def test_append_entries_failed_jumps_to_follower_log_end(no_network_raft_leader_with_log):
    leader = no_network_raft_leader_with_log

    respond(leader, 1, AppendEntriesResponse(term=3, success=False, match_index=2, reason=RejectReason.LOG_MISMATCH))
    assert leader.next_index[1] == 3


def test_append_entries_failed_never_below_match(no_network_raft_leader_with_log):
    leader = no_network_raft_leader_with_log
    leader.match_index[1] = 5
    leader.next_index[1] = 6

    respond(leader, 1, AppendEntriesResponse(term=3, success=False, match_index=0, reason=RejectReason.LOG_MISMATCH))
    assert leader.next_index[1] == 6


def test_append_entries_failed_not_leader(no_network_raft_follower):
    request = Message(0, 1, AppendEntries(0, 0, 0, 0, (), 0))
    no_network_raft_follower.handle_response(
        request, AppendEntriesResponse(term=0, success=False, match_index=0, reason=RejectReason.LOG_MISMATCH)
    )
    assert no_network_raft_follower.next_index is None
    assert drain(no_network_raft_follower) == []


def test_append_entries_succeeded_commits_current_term(no_network_raft_leader_with_log):
    leader = no_network_raft_leader_with_log

    respond(leader, 1, AppendEntriesResponse(term=3, success=True, match_index=7, reason=None))

    assert leader.match_index[1] == 7
    assert leader.next_index[1] == 8
    assert leader.commit_index == 7
    assert leader.last_applied == 7


def test_previous_term_entries_wait_for_current_term(no_network_raft_leader_with_log):
    """Entries 1-6 are from earlier terms, a majority holding them is not enough to commit"""
    leader = no_network_raft_leader_with_log

    leader.next_index[1] = 1
    respond(leader, 1, AppendEntriesResponse(term=3, success=True, match_index=6, reason=None))
    assert leader.match_index[1] == 6
    assert leader.commit_index == 0

    # the rest of the log is sent straight away
    [follow_up] = drain(leader)
    assert [entry.index for entry in follow_up.content.entries] == [7]


def test_stale_success_does_not_move_match_back(no_network_raft_leader_with_log):
    leader = no_network_raft_leader_with_log
    respond(leader, 1, AppendEntriesResponse(term=3, success=True, match_index=7, reason=None))
    respond(leader, 1, AppendEntriesResponse(term=3, success=True, match_index=4, reason=None))

    assert leader.match_index[1] == 7
    assert leader.next_index[1] == 8


def test_heartbeat_due(no_network_raft_leader, clock):
    no_network_raft_leader.tick()
    assert drain(no_network_raft_leader) == []

    clock.advance(no_network_raft_leader.heartbeat_interval)
    no_network_raft_leader.tick()
    assert sorted(message.recipient for message in drain(no_network_raft_leader)) == [1, 2]
