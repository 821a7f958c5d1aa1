from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from typing import Any

import pytest

from hetzner_k3s import cli
from hetzner_k3s.logging import LogConfig
from hetzner_k3s.teardown import TeardownReport
from tests.fakes import make_server, make_spec

pytestmark = [pytest.mark.unit]


class StubLister:
    instances: list[StubLister] = []

    def __init__(self, github_token: str | None = None) -> None:
        self.github_token = github_token
        self.calls: list[tuple[str | None, bool]] = []
        StubLister.instances.append(self)

    async def __aenter__(self) -> StubLister:
        return self

    async def __aexit__(self, *_: Any) -> None:
        return None

    async def available(self, pattern: str | None = None, *, latest: bool = False) -> list[str]:
        self.calls.append((pattern, latest))
        return ["v1.26.4+k3s1"]


@pytest.fixture
def log_configs(monkeypatch: pytest.MonkeyPatch) -> list[LogConfig]:
    configs: list[LogConfig] = []
    monkeypatch.setattr(cli, "setup_logging", lambda config: configs.append(config) or [])
    return configs


class TestParser:
    def test_create_cluster(self) -> None:
        args = cli.build_parser().parse_args(["create-cluster", "-c", "prod.toml", "-y"])
        assert args.command == "create-cluster"
        assert args.config == Path("prod.toml")
        assert args.auto_approve is True

    def test_global_flags(self) -> None:
        args = cli.build_parser().parse_args(["--debug", "--github-token", "gh", "releases", "--latest"])
        assert args.debug is True
        assert args.github_token == "gh"
        assert args.latest is True
        assert args.filter is None

    def test_command_is_required(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestMain:
    def test_releases(self, monkeypatch: pytest.MonkeyPatch, log_configs: list[LogConfig]) -> None:
        StubLister.instances.clear()
        monkeypatch.setattr(cli, "ReleaseLister", StubLister)

        assert cli.main(["--debug", "--github-token", "gh", "releases", "--filter", "1.26"]) == 0

        [lister] = StubLister.instances
        assert lister.github_token == "gh"
        assert lister.calls == [("1.26", False)]
        assert log_configs[0].level == "DEBUG"

    def test_configuration_error_exits_one(self, tmp_path: Path, log_configs: list[LogConfig]) -> None:
        assert cli.main(["list-servers", "-c", str(tmp_path / "missing.toml")]) == 1

    def test_log_file_flag(self, tmp_path: Path, log_configs: list[LogConfig]) -> None:
        cli.main(["--log-file", str(tmp_path / "x.log"), "list-servers", "-c", str(tmp_path / "nope.toml")])
        assert log_configs[0].file == str(tmp_path / "x.log")
        assert log_configs[0].level == "INFO"


def test_servers_table() -> None:
    table = cli._servers_table([make_server(1, "test-cpx11-master1", private=False)])
    assert table.row_count == 1
    assert [c.header for c in table.columns] == ["Name", "Status", "Type", "Public IP", "Private IP"]


# =============================================================================
# Cluster commands
# =============================================================================


class StubClient:
    def __init__(self, *_: Any, **__: Any) -> None:
        pass

    async def __aenter__(self) -> StubClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        return None


class StubOrchestrator:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.auto_approve: bool | None = None
        self.report = TeardownReport(deleted=["load balancer"], failed=["network"])

    async def create(self) -> None:
        self.calls.append("create")

    async def delete(self) -> TeardownReport:
        self.calls.append("delete")
        return self.report

    async def upgrade(self) -> None:
        self.calls.append("upgrade")

    async def list_servers(self) -> list[Any]:
        self.calls.append("list_servers")
        return [make_server(1, "test-cpx11-master1")]


@pytest.fixture
def orchestrator(monkeypatch: pytest.MonkeyPatch, log_configs: list[LogConfig]) -> StubOrchestrator:
    stub = StubOrchestrator()

    def build(spec, client, lister, http, *, auto_approve: bool = False) -> StubOrchestrator:
        stub.auto_approve = auto_approve
        return stub

    monkeypatch.setattr(cli, "load_config", lambda path: make_spec())
    monkeypatch.setattr(cli, "HetznerClient", StubClient)
    monkeypatch.setattr(cli, "ReleaseLister", StubClient)
    monkeypatch.setattr(cli, "HttpClient", StubClient)
    monkeypatch.setattr(cli, "_orchestrator", build)
    return stub


class StubConfirm:
    answer = False
    asked: list[str] = []

    @classmethod
    def ask(cls, prompt: str, **_: Any) -> bool:
        cls.asked.append(prompt)
        return cls.answer


@pytest.fixture
def confirm(monkeypatch: pytest.MonkeyPatch) -> type[StubConfirm]:
    StubConfirm.asked = []
    StubConfirm.answer = False
    monkeypatch.setattr(cli, "Confirm", StubConfirm)
    return StubConfirm


class TestClusterCommands:
    def test_create(self, orchestrator: StubOrchestrator, capsys: pytest.CaptureFixture[str]) -> None:
        assert cli.main(["create-cluster", "-y"]) == 0
        assert orchestrator.calls == ["create"]
        assert orchestrator.auto_approve is True
        assert "Kubeconfig written to" in capsys.readouterr().out

    def test_upgrade(self, orchestrator: StubOrchestrator) -> None:
        assert cli.main(["upgrade-cluster"]) == 0
        assert orchestrator.calls == ["upgrade"]
        assert orchestrator.auto_approve is False

    def test_list_servers(self, orchestrator: StubOrchestrator, capsys: pytest.CaptureFixture[str]) -> None:
        assert cli.main(["list-servers"]) == 0
        assert orchestrator.calls == ["list_servers"]
        assert "test-cpx11-master1" in capsys.readouterr().out

    def test_delete_with_failed_steps_still_succeeds(
        self, orchestrator: StubOrchestrator, confirm: type[StubConfirm]
    ) -> None:
        assert cli.main(["delete-cluster", "-y"]) == 0
        assert orchestrator.calls == ["delete"]
        assert confirm.asked == []

    def test_delete_declined(
        self,
        orchestrator: StubOrchestrator,
        confirm: type[StubConfirm],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        assert cli.main(["delete-cluster"]) == 1
        assert orchestrator.calls == []
        assert len(confirm.asked) == 1
        assert "Aborted." in capsys.readouterr().out

    def test_delete_confirmed(self, orchestrator: StubOrchestrator, confirm: type[StubConfirm]) -> None:
        confirm.answer = True
        assert cli.main(["delete-cluster"]) == 0
        assert orchestrator.calls == ["delete"]


# =============================================================================
# Interrupts
# =============================================================================


class TestInterrupt:
    def test_cancelled_root_task_exits_130(
        self, orchestrator: StubOrchestrator, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def cancel_self() -> None:
            task = asyncio.current_task()
            assert task is not None
            task.cancel()
            await asyncio.sleep(0)

        monkeypatch.setattr(orchestrator, "create", cancel_self)
        assert cli.main(["create-cluster"]) == cli.EXIT_INTERRUPTED

    def test_sigterm_cancels_in_flight_work(
        self, orchestrator: StubOrchestrator, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        cancelled: list[bool] = []

        async def wait_for_signal() -> None:
            os.kill(os.getpid(), signal.SIGTERM)
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        monkeypatch.setattr(orchestrator, "upgrade", wait_for_signal)

        assert cli.main(["upgrade-cluster"]) == cli.EXIT_INTERRUPTED
        assert cancelled == [True]
        assert signal.getsignal(signal.SIGTERM) == signal.SIG_DFL
