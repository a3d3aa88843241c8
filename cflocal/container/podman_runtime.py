from __future__ import annotations

import json
import logging
from typing import Any, BinaryIO, Dict, Mapping, Optional, Tuple

import requests
from podman import PodmanClient
from podman.api import decode_header, parse_repository
from podman.errors import APIError, NotFound
from urllib3.exceptions import HTTPError as URLLib3HTTPError

from .. import config as cf_config
from .interface import ContainerRuntime, CreationError, RuntimeCallError, StreamIOError

logger = logging.getLogger(__name__)

PATH_STAT_HEADER = "X-Docker-Container-Path-Stat"

_JSON_HEADERS = {"Content-Type": "application/json"}

# Transport-level failures raised by the HTTP stack under podman-py.
_TRANSPORT_ERRORS = (requests.exceptions.RequestException, URLLib3HTTPError, OSError)

# Container config keys and the podman-py create() argument each maps to.
_CONFIG_KWARGS = {
    "Hostname": "hostname",
    "Domainname": "domainname",
    "User": "user",
    "Env": "environment",
    "Entrypoint": "entrypoint",
    "WorkingDir": "working_dir",
    "Labels": "labels",
    "StopSignal": "stop_signal",
    "Tty": "tty",
    "OpenStdin": "stdin_open",
}

_HOST_CONFIG_KWARGS = {
    "Privileged": "privileged",
    "NetworkMode": "network_mode",
    "Memory": "mem_limit",
    "CpuQuota": "cpu_quota",
    "CpusetCpus": "cpuset_cpus",
    "PidsLimit": "pids_limit",
    "CapAdd": "cap_add",
    "CapDrop": "cap_drop",
    "Dns": "dns",
    "ExtraHosts": "extra_hosts",
}

# Describe the image rather than the container; nothing to pass at create.
_IMAGE_ONLY_KEYS = ("Image", "Cmd", "ExposedPorts", "Volumes")


def create_kwargs(config: Mapping[str, Any], host_config: Mapping[str, Any], name: str) -> Dict[str, Any]:
    """Translate an Engine-API style container config into containers.create() arguments.

    Raises:
        ValueError: the config names no image
    """
    image = config.get("Image")
    if not image:
        raise ValueError("container config has no Image")
    kwargs: Dict[str, Any] = {
        "image": image,
        "name": name,
        "detach": True,
        "tty": False,
        "stdin_open": False,
    }
    if config.get("Cmd"):
        kwargs["command"] = list(config["Cmd"])

    for key, value in config.items():
        if key in _CONFIG_KWARGS:
            if value not in (None, "", [], {}):
                kwargs[_CONFIG_KWARGS[key]] = value
        elif key not in _IMAGE_ONLY_KEYS:
            logger.warning("ignoring unsupported container config key %s", key)

    for key, value in host_config.items():
        if key == "Binds":
            kwargs["volumes"] = _binds_to_volumes(value or [])
        elif key == "PortBindings":
            kwargs["ports"] = _port_bindings_to_ports(value or {})
        elif key in _HOST_CONFIG_KWARGS:
            kwargs[_HOST_CONFIG_KWARGS[key]] = value
        else:
            logger.warning("ignoring unsupported host config key %s", key)
    return kwargs


def _binds_to_volumes(binds: Any) -> Dict[str, Dict[str, str]]:
    volumes = {}
    for bind in binds:
        parts = bind.split(":")
        if len(parts) < 2:
            raise ValueError(f"bind without a container path: {bind}")
        volumes[parts[0]] = {"bind": parts[1], "mode": parts[2] if len(parts) > 2 else "rw"}
    return volumes


def _port_bindings_to_ports(bindings: Mapping[str, Any]) -> Dict[str, Any]:
    ports: Dict[str, Any] = {}
    for container_port, hosts in bindings.items():
        host_ports = [int(h["HostPort"]) for h in hosts or [] if h.get("HostPort")]
        if not host_ports:
            ports[container_port] = None
        elif len(host_ports) == 1:
            ports[container_port] = host_ports[0]
        else:
            ports[container_port] = host_ports
    return ports


class ResponseStream:
    """Readable view over a streamed HTTP response body.

    close() may be called from another thread to abandon a pending read;
    reads after close report end of stream.
    """

    def __init__(self, response: Any) -> None:
        self._response = response
        self._closed = False

    def read(self, size: int = -1) -> bytes:
        if self._closed:
            return b""
        try:
            data = self._response.raw.read(None if size is None or size < 0 else size)
        except _TRANSPORT_ERRORS as exc:
            if self._closed:
                return b""
            raise StreamIOError("failed reading response stream", cause=exc)
        return data or b""

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()


class PodmanRuntime(ContainerRuntime):
    """Podman-backed implementation of ContainerRuntime.

    Boundary rules:
    - Only this module talks to the Podman service.
    - Containers are described with the Engine API config shape
      ({"Image": ..., "Cmd": [...], ...}); create() translates it for
      podman-py, and commit() stores it unchanged as the image config.
    - Logs are read raw, as 8-byte-header frames, and archives are
      streamed rather than buffered.
    - Failures leave this module as ContainerError subclasses only.
    """

    def __init__(self, *, base_url: Optional[str] = None) -> None:
        self._base_url = base_url or cf_config.podman_socket()
        # Lazy-init Podman client on first use to make tests lighter
        self._client = None  # type: ignore[var-annotated]

    # --- public interface ---

    def create(self, config: Mapping[str, Any], host_config: Mapping[str, Any], name: str) -> str:
        self._ensure_client()
        try:
            container = self._client.containers.create(**create_kwargs(config, host_config, name))
            return container.id
        except APIError as exc:
            raise CreationError(f"failed to create container {name}", cause=exc)
        except _TRANSPORT_ERRORS as exc:
            raise CreationError(f"container runtime unavailable creating {name}", cause=exc)
        except (TypeError, ValueError) as exc:
            raise CreationError(f"invalid config for container {name}", cause=exc)

    def remove(self, container_id: str, force: bool = True) -> None:
        self._ensure_client()
        try:
            container = self._client.containers.get(container_id)
            container.remove(force=force)
        except NotFound:
            logger.debug("container %s already removed", container_id)
            return
        except APIError as exc:
            if force:
                raise RuntimeCallError("failed to remove container (forced)", cause=exc)
            raise RuntimeCallError("failed to remove container", cause=exc)
        except _TRANSPORT_ERRORS as exc:
            raise RuntimeCallError("container runtime unavailable", cause=exc)

    def start(self, container_id: str) -> None:
        self._with_container("start container", container_id, lambda c: c.start())

    def wait(self, container_id: str) -> int:
        # Podman-py wait() returns dict or status code depending on version
        result = self._with_container("wait for container", container_id, lambda c: c.wait())
        if isinstance(result, dict):
            error = result.get("Error")
            if error and error.get("Message"):
                raise RuntimeCallError(f"wait failed: {error['Message']}")
            return int(result.get("StatusCode", 1))
        return int(result)

    def logs(self, container_id: str, since: Optional[str] = None) -> BinaryIO:
        # Container.logs() strips the frame headers the relay needs, so
        # the follow stream is requested directly.
        params: Dict[str, Any] = {
            "stdout": True,
            "stderr": True,
            "timestamps": True,
            "follow": True,
        }
        if since is not None:
            params["since"] = since
        response = self._call(
            "open container logs",
            "get",
            f"/containers/{container_id}/logs",
            params=params,
            stream=True,
        )
        return ResponseStream(response)

    def restart(self, container_id: str, timeout: int) -> None:
        self._with_container("restart container", container_id, lambda c: c.restart(timeout=timeout))

    def inspect(self, container_id: str) -> Dict[str, Any]:
        return self._with_container("inspect container", container_id, lambda c: dict(c.attrs))

    def put_archive(self, container_id: str, path: str, data: BinaryIO) -> None:
        accepted = self._with_container(
            f"extract archive at {path}",
            container_id,
            lambda c: c.put_archive(path=path, data=data),
        )
        if not accepted:
            raise RuntimeCallError(f"failed to extract archive at {path}: rejected by runtime")

    def get_archive(self, container_id: str, path: str) -> Tuple[BinaryIO, Dict[str, Any]]:
        # Container.get_archive() buffers the whole body; droplets are streamed.
        response = self._call(
            f"copy {path} from container",
            "get",
            f"/containers/{container_id}/archive",
            params={"path": path},
            stream=True,
        )
        try:
            stat = decode_header(response.headers.get(PATH_STAT_HEADER))
        except ValueError as exc:
            response.close()
            raise RuntimeCallError(f"bad file stat for {path}", cause=exc)
        return ResponseStream(response), stat

    def commit(
        self,
        container_id: str,
        ref: str,
        *,
        author: str,
        pause: bool,
        config: Mapping[str, Any],
    ) -> str:
        # Only the compatible endpoint stores a config body with the image,
        # and Container.commit() has no way to send one.
        repo, tag = parse_repository(ref)
        params: Dict[str, Any] = {
            "container": container_id,
            "repo": repo,
            "author": author,
            "pause": pause,
        }
        if tag:
            params["tag"] = tag
        response = self._call(
            f"commit container as {ref}",
            "post",
            "/commit",
            params=params,
            data=json.dumps(dict(config)),
            headers=_JSON_HEADERS,
            compatible=True,
        )
        try:
            return response.json()["Id"]
        except (KeyError, ValueError) as exc:
            raise RuntimeCallError("unexpected commit response", cause=exc)

    # --- private helpers ---

    def _ensure_client(self) -> None:
        if self._client is None:
            self._client = PodmanClient(base_url=self._base_url)

    def _with_container(self, what: str, container_id: str, action: Any) -> Any:
        self._ensure_client()
        try:
            return action(self._client.containers.get(container_id))
        except NotFound as exc:
            raise RuntimeCallError(f"failed to {what}: not found", cause=exc)
        except APIError as exc:
            raise RuntimeCallError(f"failed to {what}", cause=exc)
        except _TRANSPORT_ERRORS as exc:
            raise RuntimeCallError(f"failed to {what}: runtime unavailable", cause=exc)

    def _call(self, what: str, method: str, path: str, **kwargs: Any) -> Any:
        self._ensure_client()
        request = getattr(self._client.api, method)
        try:
            response = request(path, **kwargs)
            response.raise_for_status()
        except NotFound as exc:
            raise RuntimeCallError(f"failed to {what}: not found", cause=exc)
        except APIError as exc:
            raise RuntimeCallError(f"failed to {what}", cause=exc)
        except _TRANSPORT_ERRORS as exc:
            raise RuntimeCallError(f"failed to {what}: runtime unavailable", cause=exc)
        return response
