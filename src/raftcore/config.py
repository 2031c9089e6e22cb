import json

# Mapping of server ids to the (host, port) their RPC listener binds to.
SERVERS = {
    0: ("localhost", 15000),
    1: ("localhost", 15001),
    2: ("localhost", 15002),
    3: ("localhost", 15003),
    4: ("localhost", 15004),
}

# All durations are in seconds.
ELECTION_TIMEOUT_MIN = 0.150
ELECTION_TIMEOUT_MAX = 0.300
LEADER_HEARTBEAT = 0.050
TICK_INTERVAL = 0.010

RPC_TIMEOUT = 0.100
CLIENT_TIMEOUT = 2.0

MAX_ENTRIES_PER_MESSAGE = 64


def load_servers(path):
    """Reads a cluster definition of the form {"servers": {"0": ["localhost", 15000], ...}}"""
    with open(path) as config_file:
        raw = json.load(config_file)

    try:
        servers = raw["servers"]
    except (KeyError, TypeError):
        raise ValueError(f"expected a 'servers' mapping in {path}")

    return {int(server_id): (host, int(port)) for server_id, (host, port) in servers.items()}
