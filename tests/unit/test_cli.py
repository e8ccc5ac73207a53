"""Tests for etcdmirror.cli.main — etcdmirror CLI commands."""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

from click.testing import CliRunner

from etcdmirror import __version__
from etcdmirror.cli.main import cli
from etcdmirror.store.base import StoreUnavailable
from etcdmirror.sync.report import BootstrapReport


class TestVersion:
    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestPut:
    @patch("etcdmirror.store.etcd.EtcdStore")
    def test_put(self, mock_store_cls, tmp_path: Path):
        src = tmp_path / "c.txt"
        src.write_bytes(b"world")
        store = mock_store_cls.return_value

        result = CliRunner().invoke(cli, [
            "put", "c.txt", str(src), "--etcd", "http://e1:2379", "--config", str(tmp_path / "none.yaml"),
        ])

        assert result.exit_code == 0, result.output
        store.put.assert_called_once_with("c.txt", b"world")
        assert mock_store_cls.call_args[0][0]["endpoints"] == ["http://e1:2379"]
        store.close.assert_called_once()

    @patch("etcdmirror.store.etcd.EtcdStore")
    def test_put_store_error(self, mock_store_cls, tmp_path: Path):
        src = tmp_path / "c.txt"
        src.write_bytes(b"world")
        mock_store_cls.return_value.put.side_effect = StoreUnavailable("etcd not reachable")

        result = CliRunner().invoke(cli, ["put", "c.txt", str(src), "--config", str(tmp_path / "none.yaml")])

        assert result.exit_code == 1
        assert "etcd not reachable" in result.output


class TestDownload:
    @patch("etcdmirror.store.etcd.EtcdStore")
    def test_download(self, mock_store_cls, tmp_path: Path):
        from etcdmirror.store.base import Entry, RangeResult

        mock_store_cls.return_value.get_prefix.return_value = RangeResult(
            entries=[Entry(key="app/a.json", value=b"1")], revision=3,
        )

        result = CliRunner().invoke(cli, [
            "download", "app/", str(tmp_path / "out"), "--config", str(tmp_path / "none.yaml"),
        ])

        assert result.exit_code == 0, result.output
        assert "Downloaded 1 keys" in result.output
        assert (tmp_path / "out" / "app" / "a.json").read_bytes() == b"1"


class TestRun:
    def test_requires_folder(self, tmp_path: Path):
        result = CliRunner().invoke(cli, ["run", "--config", str(tmp_path / "none.yaml")])
        assert result.exit_code == 2
        assert "folder" in result.output

    @patch("etcdmirror.sync.engine.SyncEngine")
    def test_fatal_watcher_exits_nonzero(self, mock_engine_cls, tmp_path: Path):
        engine = MagicMock()
        engine.fatal_error = ""

        def build(config, on_fatal=None):
            def start():
                engine.fatal_error = "watch stream ended"
                on_fatal("watch stream ended")
                return BootstrapReport(revision=1, written=["a"])

            engine.start.side_effect = start
            return engine

        mock_engine_cls.side_effect = build

        result = CliRunner().invoke(cli, [
            "run", "-f", str(tmp_path / "sync"), "-k", "", "--no-api",
            "--config", str(tmp_path / "none.yaml"),
        ])

        assert result.exit_code == 1
        assert "Bootstrap: 1 keys written" in result.output
        assert "watch stream ended" in result.output
        engine.stop.assert_called_once()
        config = mock_engine_cls.call_args[0][0]
        assert config["folder"] == str((tmp_path / "sync").resolve())
        assert config["key"] == ""

    @patch("etcdmirror.api.server.create_app")
    @patch("etcdmirror.sync.engine.SyncEngine")
    def test_fatal_before_server_registered_stops_server(self, mock_engine_cls, mock_create_app, tmp_path: Path):
        engine = MagicMock()
        engine.fatal_error = ""
        engine.start.return_value = BootstrapReport(revision=1)
        fatal = {}

        def build(config, on_fatal=None):
            fatal["on_fatal"] = on_fatal
            return engine

        def create_app(manual, engine=None):
            # the watcher dies while the app is being built
            engine.fatal_error = "watch stream ended"
            fatal["on_fatal"]("watch stream ended")
            return MagicMock()

        mock_engine_cls.side_effect = build
        mock_create_app.side_effect = create_app

        server = MagicMock()
        server.should_exit = False
        seen = []
        server.run.side_effect = lambda: seen.append(server.should_exit)
        fake_uvicorn = MagicMock()
        fake_uvicorn.Server.return_value = server

        with patch.dict(sys.modules, {"uvicorn": fake_uvicorn}):
            result = CliRunner().invoke(cli, [
                "run", "-f", str(tmp_path / "sync"), "--config", str(tmp_path / "none.yaml"),
            ])

        assert seen == [True]
        assert result.exit_code == 1
        engine.stop.assert_called_once()
