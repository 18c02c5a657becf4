import json
import subprocess
import threading
from unittest.mock import MagicMock

import docker
import pytest

from composewatch.errors import OperationCancelled
from composewatch.model import ProjectState
from composewatch.runtime import (
    DockerRuntime,
    derive_project_state,
    format_ports,
    normalize_architecture,
    parse_compose_ls,
    parse_status_counts,
    split_config_files,
)


@pytest.fixture
def mock_client():
    return MagicMock()


@pytest.fixture
def runtime(mock_client):
    return DockerRuntime(client=mock_client)


def make_container(cid, name, status, image="nginx:1.25", labels=None, ports=None):
    c = MagicMock()
    c.id = cid
    c.name = name
    c.status = status
    c.labels = labels or {}
    c.ports = ports or {}
    c.attrs = {"Config": {"Image": image}, "State": {"Status": status}}
    return c


class TestHelpers:
    @pytest.mark.parametrize("states,expected", [
        ([], ProjectState.DOWN),
        (["running", "running"], ProjectState.RUNNING),
        (["running", "exited"], ProjectState.DEGRADED),
        (["restarting", "exited"], ProjectState.RESTARTING),
        (["paused"], ProjectState.PAUSED),
        (["exited", "created"], ProjectState.EXITED),
        (["created"], ProjectState.CREATED),
        (["dead"], ProjectState.STOPPED),
    ])
    def test_derive_project_state(self, states, expected):
        assert derive_project_state(states) == expected

    def test_parse_status_counts(self):
        assert parse_status_counts("exited(1), running(2)") == {"exited": 1, "running": 2}
        assert parse_status_counts("") == {}

    def test_parse_compose_ls_array_and_ndjson(self):
        array = json.dumps([{"Name": "web"}, {"Name": "db"}])
        ndjson = '{"Name": "web"}\n{"Name": "db"}\n'

        assert [p["Name"] for p in parse_compose_ls(array)] == ["web", "db"]
        assert [p["Name"] for p in parse_compose_ls(ndjson)] == ["web", "db"]
        assert parse_compose_ls("  ") == []

    def test_split_config_files(self):
        assert split_config_files("/a/compose.yml, /a/override.yml") == ["/a/compose.yml", "/a/override.yml"]
        assert split_config_files("n/a") == []

    @pytest.mark.parametrize("raw,expected", [
        ("x86_64", "amd64"),
        ("aarch64", "arm64"),
        ("armv7l", "arm/v7"),
        ("riscv64", "riscv64"),
        (None, None),
    ])
    def test_normalize_architecture(self, raw, expected):
        assert normalize_architecture(raw) == expected

    def test_format_ports(self):
        ports = {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "8080"}], "443/tcp": None}
        assert format_ports(ports) == ["8080:80/tcp", "443/tcp"]


class TestQueries:
    def test_list_projects(self, runtime, mock_client, mocker):
        ls_output = json.dumps([
            {"Name": "web", "Status": "running(2)", "ConfigFiles": "/srv/web/docker-compose.yml"},
            {"Name": "old", "Status": "exited(1)", "ConfigFiles": "/srv/old/compose.yaml"},
        ])
        run = mocker.patch(
            "composewatch.runtime.subprocess.run",
            return_value=subprocess.CompletedProcess(args=[], returncode=0, stdout=ls_output, stderr=""),
        )

        def list_containers(all, filters):
            if filters["label"] == "com.docker.compose.project=web":
                labels = {"com.docker.compose.project": "web", "com.docker.compose.service": "app"}
                return [
                    make_container("c1", "web-app-1", "running", labels=labels),
                    make_container("c2", "web-app-2", "running", labels=labels),
                ]
            return []

        mock_client.containers.list.side_effect = list_containers

        projects = runtime.list_projects()

        assert run.call_args.args[0] == ["docker", "compose", "ls", "-a", "--format", "json"]
        assert [p.name for p in projects] == ["web", "old"]
        web, old = projects
        assert web.state == ProjectState.RUNNING
        assert web.path == "/srv/web"
        assert [s.name for s in web.services] == ["app", "app"]
        assert old.services == []
        assert old.state == ProjectState.EXITED
        assert old.compose_files == ["/srv/old/compose.yaml"]

    def test_list_projects_command_failure(self, runtime, mocker):
        mocker.patch(
            "composewatch.runtime.subprocess.run",
            return_value=subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="daemon down"),
        )
        assert runtime.list_projects() == []

    def test_list_containers_keeps_labels(self, runtime, mock_client):
        labels = {"com.docker.compose.project": "web", "com.docker.compose.service": "app"}
        mock_client.containers.list.return_value = [
            make_container("c1", "web-app-1", "running", labels=labels, ports={"80/tcp": [{"HostPort": "8080"}]}),
            make_container("c2", "adhoc", "exited", image="redis:7"),
        ]

        records = runtime.list_containers()

        assert records[0].project_name == "web"
        assert records[0].service_name == "app"
        assert records[0].ports == ["8080:80/tcp"]
        assert records[1].project_name is None
        assert records[1].image == "redis:7"

    def test_list_containers_failure_returns_empty(self, runtime, mock_client):
        mock_client.containers.list.side_effect = docker.errors.APIError("boom")
        assert runtime.list_containers() == []

    def test_get_container_not_found(self, runtime, mock_client):
        mock_client.containers.get.side_effect = docker.errors.NotFound("gone")
        assert runtime.get_container("abc") is None

    def test_get_local_image(self, runtime, mock_client):
        img = MagicMock()
        img.attrs = {
            "RepoDigests": ["nginx@sha256:abc"],
            "Architecture": "amd64",
            "Created": "2024-02-03T04:05:06.123456789Z",
        }
        mock_client.images.get.return_value = img

        info = runtime.get_local_image("nginx:1.25")

        assert info.repo_digests == ["nginx@sha256:abc"]
        assert info.architecture == "amd64"
        assert info.created_at.year == 2024

    def test_get_local_image_missing(self, runtime, mock_client):
        mock_client.images.get.side_effect = docker.errors.ImageNotFound("missing")
        assert runtime.get_local_image("nginx:1.25") is None

    def test_no_client_degrades_to_defaults(self, mocker):
        mocker.patch("composewatch.runtime.docker.from_env", side_effect=docker.errors.DockerException("no daemon"))
        runtime = DockerRuntime()

        assert runtime.client is None
        assert runtime.list_containers() == []
        assert runtime.get_local_image("nginx") is None


class TestHostArchitecture:
    def test_reads_daemon_info_once(self, runtime, mock_client):
        mock_client.info.return_value = {"Architecture": "aarch64"}

        assert runtime.get_host_architecture() == "arm64"
        assert runtime.get_host_architecture() == "arm64"
        mock_client.info.assert_called_once()

    def test_falls_back_to_local_machine(self, runtime, mock_client, mocker):
        mock_client.info.side_effect = docker.errors.DockerException("no daemon")
        mocker.patch("composewatch.runtime.platform.machine", return_value="x86_64")

        assert runtime.get_host_architecture() == "amd64"


class TestStreamCompose:
    @staticmethod
    def fake_process(lines, exit_code=0):
        process = MagicMock()
        process.stdout = MagicMock()
        process.stdout.__iter__.return_value = iter(lines)
        process.wait.return_value = exit_code
        process.poll.return_value = exit_code
        return process

    def test_streams_lines_and_builds_command(self, runtime, mocker):
        process = self.fake_process(["web Pulling\n", "web Pulled\n"])
        popen = mocker.patch("composewatch.runtime.subprocess.Popen", return_value=process)
        seen = []

        result = runtime.stream_compose("/srv/web/docker-compose.yml", ["pull", "web"], seen.append)

        assert seen == ["web Pulling", "web Pulled"]
        assert result.exit_code == 0
        assert result.error == ""
        assert popen.call_args.args[0] == ["docker", "compose", "-f", "/srv/web/docker-compose.yml", "pull", "web"]
        assert popen.call_args.kwargs["cwd"] == "/srv/web"
        assert popen.call_args.kwargs["stderr"] == subprocess.STDOUT

    def test_failure_keeps_output_tail(self, runtime, mocker):
        lines = [f"line {i}\n" for i in range(30)]
        mocker.patch("composewatch.runtime.subprocess.Popen", return_value=self.fake_process(lines, 1))

        result = runtime.stream_compose("/srv/web/compose.yaml", ["pull"])

        assert result.exit_code == 1
        assert result.error.splitlines()[0] == "line 10"
        assert result.error.splitlines()[-1] == "line 29"

    def test_missing_binary(self, runtime, mocker):
        mocker.patch("composewatch.runtime.subprocess.Popen", side_effect=FileNotFoundError("docker"))

        result = runtime.stream_compose("/srv/web/compose.yaml", ["pull"])

        assert result.exit_code == -1

    def test_cancel_kills_process(self, runtime, mocker):
        cancel = threading.Event()
        process = self.fake_process(["one\n", "two\n"])
        process.poll.return_value = None
        mocker.patch("composewatch.runtime.subprocess.Popen", return_value=process)

        def on_line(line):
            cancel.set()

        with pytest.raises(OperationCancelled):
            runtime.stream_compose("/srv/web/compose.yaml", ["pull"], on_line, cancel)
        process.kill.assert_called()

    def test_cancel_reaches_silent_process(self, runtime, mocker):
        cancel = threading.Event()
        killed = threading.Event()

        def silent_output():
            killed.wait(5)
            return
            yield

        process = MagicMock()
        process.stdout = silent_output()
        process.poll.return_value = None
        process.kill.side_effect = killed.set
        mocker.patch("composewatch.runtime.subprocess.Popen", return_value=process)
        timer = threading.Timer(0.2, cancel.set)
        timer.start()

        try:
            with pytest.raises(OperationCancelled):
                runtime.stream_compose("/srv/web/compose.yaml", ["pull"], cancel_event=cancel)
        finally:
            timer.cancel()
        assert killed.is_set()
