"""CLI entry point for etcdmirror."""

from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path

import click

from etcdmirror import __version__
from etcdmirror.core.config import apply_overrides, load_config


def _setup_logging(config: dict) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = config.get("log_file")
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_path), encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, str(config.get("log_level", "info")).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _load(config_file: Path | None, overrides: dict) -> dict:
    return apply_overrides(load_config(config_file), overrides)


def _manual(config: dict):
    from etcdmirror.store.etcd import EtcdStore
    from etcdmirror.sync.manual import ManualSync

    return ManualSync(EtcdStore(config.get("etcd", {})))


config_option = click.option(
    "--config",
    "config_file",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to config.yaml (default: $ETCDMIRROR_CONFIG or ~/.etcdmirror/config.yaml).",
)
etcd_option = click.option(
    "--etcd",
    "endpoints",
    multiple=True,
    help="etcd endpoint URL, e.g. http://127.0.0.1:2379. Repeat for several.",
)


@click.group()
@click.version_option(version=__version__, prog_name="etcdmirror")
def cli() -> None:
    """etcdmirror — keep a local folder and an etcd key prefix in sync."""


@cli.command("run")
@click.option("--folder", "-f", type=click.Path(path_type=Path), default=None,
              help="Local folder to synchronize.")
@click.option("--key", "-k", default=None,
              help="Root key used as the etcd prefix (\"\" = all keys).")
@click.option("--port", "-p", type=int, default=None, help="HTTP API port (default: 3000).")
@click.option("--interval", type=float, default=None,
              help="Seconds between local folder scans (default: 15).")
@click.option("--no-api", is_flag=True, help="Do not start the HTTP API.")
@etcd_option
@config_option
def run_cmd(
    folder: Path | None,
    key: str | None,
    port: int | None,
    interval: float | None,
    no_api: bool,
    endpoints: tuple[str, ...],
    config_file: Path | None,
) -> None:
    """Run the sync daemon in the foreground."""
    config = _load(config_file, {
        "folder": str(folder) if folder else None,
        "key": key,
        "etcd": {"endpoints": list(endpoints) or None},
        "poll": {"interval_seconds": interval},
        "api": {"port": port},
    })
    if not config.get("folder"):
        raise click.UsageError("No folder configured. Pass --folder or set 'folder' in config.yaml.")

    _setup_logging(config)
    log = logging.getLogger("etcdmirror.daemon")

    api_cfg = config.get("api", {})
    use_api = not no_api and api_cfg.get("enabled", True)
    uvicorn = None
    if use_api:
        try:
            import uvicorn
        except ImportError:
            click.echo(
                "FastAPI and uvicorn are required for the HTTP API. "
                "Install with: pip install etcdmirror[api]. Continuing without it."
            )
            use_api = False

    shutdown = threading.Event()
    server_ref: dict = {}

    def on_fatal(reason: str) -> None:
        shutdown.set()
        server = server_ref.get("server")
        if server is not None:
            server.should_exit = True

    from etcdmirror.sync.engine import SyncEngine

    engine = SyncEngine(config, on_fatal=on_fatal)
    log.info("etcdmirror %s starting", __version__)
    report = engine.start()
    click.echo(f"Syncing {config['folder']} <-> etcd key {config['key']!r}")
    if report.error:
        click.echo(f"  Bootstrap: failed ({report.error}), starting with an empty mirror")
    else:
        click.echo(f"  Bootstrap: {len(report.written)} keys written")

    try:
        if use_api and uvicorn is not None and not shutdown.is_set():
            from etcdmirror.api.server import create_app

            app = create_app(engine.manual, engine=engine)
            host = api_cfg.get("host", "0.0.0.0")
            api_port = int(api_cfg.get("port", 3000))
            server = uvicorn.Server(uvicorn.Config(app, host=host, port=api_port, log_level="info"))
            server_ref["server"] = server
            # on_fatal may have fired before the server was registered
            if shutdown.is_set():
                server.should_exit = True
            click.echo(f"  HTTP API: http://{host}:{api_port}")
            server.run()
        else:
            click.echo("Press Ctrl+C to stop.")

            def signal_handler(sig, frame):
                shutdown.set()

            signal.signal(signal.SIGINT, signal_handler)
            signal.signal(signal.SIGTERM, signal_handler)
            while not shutdown.wait(1.0):
                pass
    except KeyboardInterrupt:
        pass
    finally:
        click.echo("Shutting down...")
        engine.stop()

    if engine.fatal_error:
        click.echo(f"Fatal: remote watcher stopped: {engine.fatal_error}", err=True)
        sys.exit(1)


@cli.command("put")
@click.argument("key")
@click.argument("path", type=click.Path(path_type=Path))
@etcd_option
@config_option
def put_cmd(key: str, path: Path, endpoints: tuple[str, ...], config_file: Path | None) -> None:
    """Upload the file at PATH to etcd under KEY."""
    from etcdmirror.core.keys import InvalidKey
    from etcdmirror.core.mirror import FilesystemError
    from etcdmirror.store.base import StoreError

    config = _load(config_file, {"etcd": {"endpoints": list(endpoints) or None}})
    manual = _manual(config)
    try:
        manual.manual_upload(key, path)
    except (InvalidKey, FilesystemError, StoreError) as e:
        raise click.ClickException(str(e)) from e
    finally:
        manual.store.close()
    click.echo(f"Uploaded {path} -> {key}")


@cli.command("download")
@click.argument("key")
@click.argument("path", type=click.Path(path_type=Path))
@etcd_option
@config_option
def download_cmd(key: str, path: Path, endpoints: tuple[str, ...], config_file: Path | None) -> None:
    """Download every key starting with KEY into the folder PATH."""
    from etcdmirror.core.keys import InvalidKey
    from etcdmirror.core.mirror import FilesystemError
    from etcdmirror.store.base import StoreError

    config = _load(config_file, {"etcd": {"endpoints": list(endpoints) or None}})
    manual = _manual(config)
    try:
        written = manual.manual_download(key, path)
    except (InvalidKey, FilesystemError, StoreError) as e:
        raise click.ClickException(str(e)) from e
    finally:
        manual.store.close()
    click.echo(f"Downloaded {len(written)} keys into {path}")


if __name__ == "__main__":
    cli()
