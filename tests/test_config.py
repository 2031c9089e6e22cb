import json

import pytest
from raftcore import config


def test_timing_constants():
    assert config.LEADER_HEARTBEAT < config.ELECTION_TIMEOUT_MIN < config.ELECTION_TIMEOUT_MAX
    assert config.TICK_INTERVAL < config.LEADER_HEARTBEAT


def test_load_servers(tmp_path):
    path = tmp_path / "cluster.json"
    path.write_text(json.dumps({"servers": {"0": ["localhost", 16000], "1": ["10.0.0.2", "16001"]}}))

    assert config.load_servers(str(path)) == {0: ("localhost", 16000), 1: ("10.0.0.2", 16001)}


def test_load_servers_without_servers(tmp_path):
    path = tmp_path / "cluster.json"
    path.write_text(json.dumps({"nodes": []}))

    with pytest.raises(ValueError):
        config.load_servers(str(path))
