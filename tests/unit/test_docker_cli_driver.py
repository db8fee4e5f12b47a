"""
Unit tests for the Docker command line driver. subprocess.run is replaced so
no engine is needed; the tests check argument lists and error classification.
"""
import json
import subprocess

import pytest

from dockhand.CONFIG.settings import Settings
from dockhand.DRIVERS import docker_cli
from dockhand.DRIVERS.base import DriverError, DriverTimeoutError, ErrorClass
from dockhand.DRIVERS.docker_cli import DockerCliDriver, classify
from dockhand.MODELS.engine_status import EngineState
from dockhand.MODELS.image_ref import ImageRef


class FakeRun:
    """Records commands and replays canned results."""

    def __init__(self):
        self.commands = []
        self.results = []

    def push(self, returncode=0, stdout="", stderr="", exc=None):
        self.results.append((returncode, stdout, stderr, exc))

    def __call__(self, command, **kwargs):
        self.commands.append((command, kwargs))
        returncode, stdout, stderr, exc = self.results.pop(0) if self.results else (0, "", "", None)
        if exc is not None:
            raise exc
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)


@pytest.fixture
def fake_run(monkeypatch):
    runner = FakeRun()
    monkeypatch.setattr(docker_cli.subprocess, "run", runner)
    return runner


@pytest.fixture
def driver():
    return DockerCliDriver(Settings(engine_binary="docker", default_timeout=7, stop_grace_period=3))


class TestArguments:
    """Tests for the argument lists sent to the engine."""

    def test_pull(self, driver, fake_run):
        ref = driver.pull("nginx", "latest")
        assert ref == ImageRef("nginx", "latest")
        command, kwargs = fake_run.commands[0]
        assert command == ["docker", "pull", "nginx:latest"]
        assert kwargs["timeout"] == 7
        assert kwargs["shell"] is False

    def test_build(self, driver, fake_run):
        driver.build("./app", "web", "v1", timeout=30)
        command, kwargs = fake_run.commands[0]
        assert command == ["docker", "build", "-t", "web:v1", "./app"]
        assert kwargs["timeout"] == 30

    def test_run_detached_creates_labelled_container(self, driver, fake_run):
        driver.run_detached(ImageRef("nginx"), "abc")
        assert fake_run.commands[0][0] == [
            "docker", "create", "--name", "abc", "--label", "dockhand.managed=true", "nginx:latest",
        ]

    def test_lifecycle_commands(self, driver, fake_run):
        driver.start("abc")
        driver.stop("abc")
        driver.remove("abc")
        assert [c for c, _ in fake_run.commands] == [
            ["docker", "start", "abc"],
            ["docker", "stop", "-t", "3", "abc"],
            ["docker", "rm", "abc"],
        ]

    def test_network_commands(self, driver, fake_run):
        driver.create_network("backend")
        driver.connect_network("abc", "backend")
        driver.disconnect_network("abc", "backend")
        driver.remove_network("backend")
        assert [c for c, _ in fake_run.commands] == [
            ["docker", "network", "create", "backend"],
            ["docker", "network", "connect", "backend", "abc"],
            ["docker", "network", "disconnect", "backend", "abc"],
            ["docker", "network", "rm", "backend"],
        ]


class TestErrors:
    """Tests for failure classification."""

    def test_not_found(self, driver, fake_run):
        fake_run.push(1, stderr="Error response from daemon: No such container: abc")
        with pytest.raises(DriverError) as excinfo:
            driver.start("abc")
        assert excinfo.value.classification == ErrorClass.NOT_FOUND
        assert excinfo.value.code == 1
        assert "No such container" in excinfo.value.diagnostic

    def test_daemon_unreachable(self, driver, fake_run):
        fake_run.push(1, stderr="Cannot connect to the Docker daemon at unix:///var/run/docker.sock.")
        with pytest.raises(DriverError) as excinfo:
            driver.stop("abc")
        assert excinfo.value.transport

    def test_missing_binary(self, driver, fake_run):
        fake_run.push(exc=FileNotFoundError("docker"))
        with pytest.raises(DriverError) as excinfo:
            driver.start("abc")
        assert excinfo.value.classification == ErrorClass.TRANSPORT
        assert excinfo.value.code is None

    def test_timeout(self, driver, fake_run):
        fake_run.push(exc=subprocess.TimeoutExpired(["docker", "stop"], 7))
        with pytest.raises(DriverTimeoutError):
            driver.stop("abc")

    def test_unknown(self):
        assert classify(125, "conflict: unable to remove repository reference") == ErrorClass.UNKNOWN


class TestQueries:
    """Tests for status and listing queries."""

    def test_status_running(self, driver, fake_run):
        inspect = [{
            "State": {"Status": "running", "ExitCode": 0},
            "NetworkSettings": {"Networks": {"bridge": {}, "backend": {}}},
        }]
        fake_run.push(stdout=json.dumps(inspect))
        report = driver.query_container_status("abc")
        assert report.engine_state == EngineState.RUNNING
        assert report.network == "backend"
        assert fake_run.commands[0][0] == ["docker", "container", "inspect", "abc"]

    def test_status_exited(self, driver, fake_run):
        fake_run.push(stdout=json.dumps([{"State": {"Status": "exited", "ExitCode": 137}}]))
        report = driver.query_container_status("abc")
        assert report.engine_state == EngineState.EXITED
        assert report.exit_code == 137
        assert report.network is None

    def test_status_missing(self, driver, fake_run):
        fake_run.push(1, stderr="Error: No such container: abc")
        report = driver.query_container_status("abc")
        assert report.engine_state == EngineState.MISSING

    def test_status_transport_failure_raises(self, driver, fake_run):
        fake_run.push(1, stderr="error during connect: daemon down")
        with pytest.raises(DriverError):
            driver.query_container_status("abc")

    def test_list_images_skips_dangling(self, driver, fake_run):
        rows = [
            {"Repository": "nginx", "Tag": "latest", "ID": "sha256:1"},
            {"Repository": "<none>", "Tag": "<none>", "ID": "sha256:2"},
        ]
        fake_run.push(stdout="\n".join(json.dumps(r) for r in rows))
        images = driver.list_images()
        assert [i.ref for i in images] == [ImageRef("nginx", "latest")]

    def test_list_containers(self, driver, fake_run):
        rows = [
            {"Names": "abc", "Image": "nginx:latest", "State": "running",
             "Labels": "dockhand.managed=true", "Networks": "bridge,backend", "Status": "Up 2s"},
            {"Names": "other", "Image": "redis", "State": "exited", "Labels": "", "Networks": "bridge"},
        ]
        fake_run.push(stdout="\n".join(json.dumps(r) for r in rows))
        containers = driver.list_containers()
        assert containers[0].managed is True
        assert containers[0].status.network == "backend"
        assert containers[1].managed is False
        assert containers[1].status.engine_state == EngineState.EXITED

    def test_list_networks_excludes_builtins(self, driver, fake_run):
        fake_run.push(stdout="bridge\nhost\nnone\nbackend\n")
        assert driver.list_networks() == ["backend"]

    def test_inspect_image_missing(self, driver, fake_run):
        fake_run.push(1, stderr="Error: No such image: nginx:latest")
        assert driver.inspect_image("nginx", "latest") is None
