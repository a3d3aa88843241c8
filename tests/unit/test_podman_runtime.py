"""Unit tests for PodmanRuntime calls and error translation."""

from __future__ import annotations

import base64
import io
import json
from unittest.mock import MagicMock, patch

import pytest
import requests
from podman.errors import APIError, NotFound

from cflocal.container.interface import CreationError, RuntimeCallError, StreamIOError
from cflocal.container.podman_runtime import (
    PATH_STAT_HEADER,
    PodmanRuntime,
    ResponseStream,
    create_kwargs,
)


@pytest.fixture
def runtime():
    runtime = PodmanRuntime(base_url="unix:///tmp/podman.sock")
    with patch.object(runtime, "_ensure_client"):
        runtime._client = MagicMock()
        yield runtime


@pytest.fixture
def container(runtime):
    mock_container = MagicMock()
    runtime._client.containers.get.return_value = mock_container
    return mock_container


def api(runtime):
    return runtime._client.api


class TestCreate:
    def test_create_translates_config(self, runtime):
        runtime._client.containers.create.return_value.id = "abc123"

        container_id = runtime.create(
            {"Image": "X", "Hostname": "app", "Cmd": ["sh", "-c", "run"], "Env": ["PORT=8080"]},
            {"Privileged": False},
            "app-1",
        )

        assert container_id == "abc123"
        runtime._client.containers.create.assert_called_once_with(
            image="X",
            name="app-1",
            detach=True,
            tty=False,
            stdin_open=False,
            command=["sh", "-c", "run"],
            hostname="app",
            environment=["PORT=8080"],
            privileged=False,
        )

    def test_create_api_error(self, runtime):
        runtime._client.containers.create.side_effect = APIError("name in use")

        with pytest.raises(CreationError) as exc_info:
            runtime.create({"Image": "X"}, {}, "app-1")
        assert isinstance(exc_info.value.__cause__, APIError)

    def test_create_runtime_unavailable(self, runtime):
        runtime._client.containers.create.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(CreationError):
            runtime.create({"Image": "X"}, {}, "app-1")

    def test_create_without_image(self, runtime):
        with pytest.raises(CreationError, match="invalid config"):
            runtime.create({"Hostname": "app"}, {}, "app-1")
        runtime._client.containers.create.assert_not_called()


class TestCreateKwargs:
    def test_binds_and_ports(self):
        kwargs = create_kwargs(
            {"Image": "X", "ExposedPorts": {"8080/tcp": {}}},
            {
                "Binds": ["/srv/app:/app", "/srv/cache:/cache:ro"],
                "PortBindings": {"8080/tcp": [{"HostPort": "18080"}], "9090/tcp": [{"HostIp": "127.0.0.1"}]},
            },
            "app-1",
        )

        assert kwargs["volumes"] == {
            "/srv/app": {"bind": "/app", "mode": "rw"},
            "/srv/cache": {"bind": "/cache", "mode": "ro"},
        }
        assert kwargs["ports"] == {"8080/tcp": 18080, "9090/tcp": None}

    def test_empty_values_left_out(self):
        kwargs = create_kwargs({"Image": "X", "Cmd": None, "WorkingDir": "", "Env": []}, {}, "app-1")

        assert "command" not in kwargs
        assert "working_dir" not in kwargs
        assert "environment" not in kwargs

    def test_unknown_keys_ignored(self, caplog):
        kwargs = create_kwargs({"Image": "X", "Healthcheck": {}}, {"Sysctls": {}}, "app-1")

        assert "Healthcheck" not in kwargs
        assert "Sysctls" not in kwargs
        assert "ignoring unsupported container config key Healthcheck" in caplog.text

    def test_bad_bind(self):
        with pytest.raises(ValueError):
            create_kwargs({"Image": "X"}, {"Binds": ["/srv/app"]}, "app-1")


class TestRemove:
    def test_remove_forced(self, runtime, container):
        runtime.remove("abc123")

        runtime._client.containers.get.assert_called_once_with("abc123")
        container.remove.assert_called_once_with(force=True)

    def test_remove_already_gone(self, runtime):
        runtime._client.containers.get.side_effect = NotFound("no such container")

        runtime.remove("abc123")

    def test_remove_failure(self, runtime, container):
        container.remove.side_effect = APIError("busy")

        with pytest.raises(RuntimeCallError, match="forced"):
            runtime.remove("abc123")


class TestLifecycleCalls:
    def test_start(self, runtime, container):
        runtime.start("abc123")

        container.start.assert_called_once_with()

    def test_wait_returns_status(self, runtime, container):
        container.wait.return_value = 3

        assert runtime.wait("abc123") == 3

    def test_wait_dict_result(self, runtime, container):
        container.wait.return_value = {"StatusCode": 4, "Error": None}

        assert runtime.wait("abc123") == 4

    def test_wait_reports_error(self, runtime, container):
        container.wait.return_value = {"StatusCode": 0, "Error": {"Message": "container vanished"}}

        with pytest.raises(RuntimeCallError, match="container vanished"):
            runtime.wait("abc123")

    def test_restart_grace(self, runtime, container):
        runtime.restart("abc123", 1)

        container.restart.assert_called_once_with(timeout=1)

    def test_errors_translated(self, runtime, container):
        container.start.side_effect = APIError("boom")

        with pytest.raises(RuntimeCallError, match="failed to start container"):
            runtime.start("abc123")

    def test_missing_container(self, runtime):
        runtime._client.containers.get.side_effect = NotFound("no such container")

        with pytest.raises(RuntimeCallError, match="failed to restart container: not found"):
            runtime.restart("abc123", 1)

    def test_inspect(self, runtime, container):
        container.attrs = {"Id": "abc123", "State": {"StartedAt": "2024-05-01T10:00:00Z"}}

        assert runtime.inspect("abc123")["State"]["StartedAt"] == "2024-05-01T10:00:00Z"

    def test_logs_request(self, runtime):
        response = api(runtime).get.return_value
        response.raw = io.BytesIO(b"frames")

        stream = runtime.logs("abc123", since="2024-05-01T10:00:00.113456Z")

        args, kwargs = api(runtime).get.call_args
        assert args[0] == "/containers/abc123/logs"
        assert kwargs["stream"] is True
        assert kwargs["params"] == {
            "stdout": True,
            "stderr": True,
            "timestamps": True,
            "follow": True,
            "since": "2024-05-01T10:00:00.113456Z",
        }
        assert stream.read(6) == b"frames"
        stream.close()
        response.close.assert_called_once_with()

    def test_logs_without_since(self, runtime):
        runtime.logs("abc123")
        assert "since" not in api(runtime).get.call_args[1]["params"]


class TestArchives:
    def test_put_archive(self, runtime, container):
        data = io.BytesIO(b"tar")
        container.put_archive.return_value = True

        runtime.put_archive("abc123", "/", data)

        container.put_archive.assert_called_once_with(path="/", data=data)

    def test_put_archive_rejected(self, runtime, container):
        container.put_archive.return_value = False

        with pytest.raises(RuntimeCallError, match="rejected"):
            runtime.put_archive("abc123", "/", io.BytesIO())

    def test_put_archive_failure(self, runtime, container):
        container.put_archive.side_effect = APIError("read-only")

        with pytest.raises(RuntimeCallError, match="extract archive"):
            runtime.put_archive("abc123", "/", io.BytesIO())

    def test_get_archive_stat(self, runtime):
        stat = {"name": "droplet", "size": 42, "mode": 420}
        response = api(runtime).get.return_value
        response.headers = {PATH_STAT_HEADER: base64.b64encode(json.dumps(stat).encode()).decode()}
        response.raw = io.BytesIO(b"tarball")

        stream, got = runtime.get_archive("abc123", "/tmp/droplet")

        assert got == stat
        assert stream.read() == b"tarball"
        assert api(runtime).get.call_args[1]["params"] == {"path": "/tmp/droplet"}

    def test_get_archive_without_stat(self, runtime):
        response = api(runtime).get.return_value
        response.headers = {}
        response.raw = io.BytesIO(b"")

        _, got = runtime.get_archive("abc123", "/tmp/droplet")

        assert got == {}

    def test_get_archive_bad_stat(self, runtime):
        response = api(runtime).get.return_value
        response.headers = {PATH_STAT_HEADER: "!!!not base64!!!"}

        with pytest.raises(RuntimeCallError, match="bad file stat"):
            runtime.get_archive("abc123", "/tmp/droplet")
        response.close.assert_called_once_with()

    def test_get_archive_missing_path(self, runtime):
        api(runtime).get.return_value.raise_for_status.side_effect = NotFound("no such file")

        with pytest.raises(RuntimeCallError, match="not found"):
            runtime.get_archive("abc123", "/tmp/missing")


class TestCommit:
    def test_commit_params(self, runtime):
        api(runtime).post.return_value.json.return_value = {"Id": "sha256:beef"}

        image_id = runtime.commit("abc123", "cflocal/app:v1", author="CF Local", pause=True, config={"Image": "X"})

        assert image_id == "sha256:beef"
        args, kwargs = api(runtime).post.call_args
        assert args[0] == "/commit"
        assert kwargs["compatible"] is True
        assert kwargs["params"] == {
            "container": "abc123",
            "repo": "cflocal/app",
            "tag": "v1",
            "author": "CF Local",
            "pause": True,
        }
        assert json.loads(kwargs["data"]) == {"Image": "X"}

    def test_commit_without_tag(self, runtime):
        api(runtime).post.return_value.json.return_value = {"Id": "sha256:beef"}

        runtime.commit("abc123", "cflocal/app", author="CF Local", pause=True, config={})

        assert "tag" not in api(runtime).post.call_args[1]["params"]


class TestResponseStream:
    def test_read_after_close(self):
        response = MagicMock()
        stream = ResponseStream(response)
        stream.close()
        stream.close()

        assert stream.read(8) == b""
        response.close.assert_called_once_with()

    def test_transport_error(self):
        response = MagicMock()
        response.raw.read.side_effect = requests.exceptions.ChunkedEncodingError("reset")

        with pytest.raises(StreamIOError):
            ResponseStream(response).read(8)
