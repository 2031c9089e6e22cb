import logging
import os
import time

import click
from raftcore import config, storage
from raftcore.applier import Applier
from raftcore.client import DistDict, NoConnectionError
from raftcore.controller import RaftController
from raftcore.log import LogEntry, PersistentLog
from raftcore.network import SocketTransport
from raftcore.server import RaftServer
from raftcore.state_machine import KVStateMachine

LOG_FORMAT = "%(relativeCreated)6d %(threadName)30s - %(name)17s - %(levelname)s - %(message)s"


def setup_logger(verbose, log_file_path):
    log_level = logging.DEBUG if verbose else logging.INFO
    c_handler = logging.StreamHandler()
    f_handler = logging.FileHandler(log_file_path, mode="w")
    c_handler.setLevel(logging.WARNING)
    f_handler.setLevel(log_level)

    c_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    f_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(level=log_level, handlers=[c_handler, f_handler])


def state_paths(data_dir, server):
    return (
        os.path.join(data_dir, f"server-{server}.state"),
        os.path.join(data_dir, f"server-{server}.log"),
    )


@click.group()
@click.option("-v", "--verbose", is_flag=True)
@click.option("-c", "--config-path", type=click.Path(exists=True, dir_okay=False), default=None)
@click.pass_context
def main(ctx, verbose, config_path):
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["servers"] = config.load_servers(config_path) if config_path else config.SERVERS


@main.command()
@click.option("-s", "--server", type=int, required=True)
@click.option("-d", "--data-dir", type=click.Path(file_okay=False), default=".")
@click.pass_context
def start(ctx, server, data_dir):
    servers = ctx.obj["servers"]
    if server not in servers:
        raise click.BadParameter(f"server {server} is not one of {sorted(servers)}", param_hint="--server")

    os.makedirs(data_dir, exist_ok=True)
    setup_logger(ctx.obj["verbose"], os.path.join(data_dir, f"raft-{server}.log"))
    state_path, log_path = state_paths(data_dir, server)

    machine = RaftServer(
        server_id=server,
        peers=list(servers),
        log=PersistentLog(log_path),
        hard_state=storage.HardStateStore(state_path),
        # the key-value store lives in memory, so it is rebuilt from the start of the log on every restart
        applier=Applier(KVStateMachine(server), server_id=server),
    )
    controller = RaftController(server, machine, SocketTransport(server, servers), listen_address=servers[server])
    controller.start()

    try:
        while controller.healthy():
            time.sleep(1)
            click.echo(
                f"server {server} | {machine.role.name.lower():9} | term {machine.term} | "
                f"voted for {machine.voted_for} | leader {machine.leader_id} | "
                f"commit {machine.commit_index} | applied {machine.last_applied} | log {machine.log.last_index}"
            )
    except KeyboardInterrupt:
        pass
    finally:
        controller.stop()

    if machine.stopped:
        raise click.ClickException("server stopped after a storage failure")


@main.command()
@click.option("-s", "--server", type=int, required=True)
@click.option("-d", "--data-dir", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("-n", "--entries", type=int, default=10)
def status(server, data_dir, entries):
    """Prints the persisted term, vote and log tail of a server"""
    state_path, log_path = state_paths(data_dir, server)
    hard_state = storage.HardStateStore(state_path).load()

    try:
        with open(log_path, "rb") as log_file:
            records, _ = storage.read_records(log_file.read())
    except FileNotFoundError:
        records = []

    click.echo(f"---- Server: {server} ----")
    click.echo(f"term: {hard_state.term}")
    click.echo(f"voted for: {hard_state.voted_for}")
    click.echo(f"---- Log ({len(records)} entries) ----")
    for record in records[-entries:] if entries > 0 else []:
        entry = LogEntry(*record)
        click.echo(f"{entry.index:>6} {entry.term:>4} {entry.command}")


def _client(ctx):
    return DistDict(ctx.obj["servers"])


@main.command(name="set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def set_value(ctx, key, value):
    client = _client(ctx)
    try:
        client[key] = value
    except NoConnectionError as e:
        raise click.ClickException(str(e))
    finally:
        client.close()
    click.echo("ok")


@main.command(name="get")
@click.argument("key")
@click.pass_context
def get_value(ctx, key):
    client = _client(ctx)
    try:
        value = client[key]
    except NoConnectionError as e:
        raise click.ClickException(str(e))
    finally:
        client.close()
    click.echo(value)


@main.command(name="delete")
@click.argument("key")
@click.pass_context
def delete_value(ctx, key):
    client = _client(ctx)
    try:
        del client[key]
    except NoConnectionError as e:
        raise click.ClickException(str(e))
    finally:
        client.close()
    click.echo("ok")


if __name__ == "__main__":
    main()
