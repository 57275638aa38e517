# src/tools/docker_runtime.py
import logging
import threading
from typing import Iterator, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from engine.errors import ContainerCreateError, EngineUnavailableError, ImagePullError, StreamError
from tools.base import STDERR, STDOUT, ContainerHandle, ContainerRuntime, ContainerSpec, OutputChunk

ENDPOINT_SCHEMES = ("unix://", "npipe://", "tcp://", "http://", "https://", "ssh://")


def normalize_endpoint(endpoint: Optional[str]) -> Optional[str]:
    """
    Accept unix sockets, named pipes and TCP endpoints. A bare socket path is
    treated as a unix socket.
    """
    if not endpoint:
        return None
    endpoint = endpoint.strip()
    if endpoint.startswith(ENDPOINT_SCHEMES):
        return endpoint
    if endpoint.startswith("//./pipe/") or endpoint.startswith("\\\\.\\pipe\\"):
        return "npipe://" + endpoint.replace("\\", "/")
    if endpoint.startswith("/"):
        return f"unix://{endpoint}"
    return f"tcp://{endpoint}"


def split_image(image: str):
    """Split an image reference into (repository, tag) without confusing a registry port for a tag."""
    if "@" in image:
        return image, None
    last = image.rsplit("/", 1)[-1]
    if ":" in last:
        repo, tag = image.rsplit(":", 1)
        return repo, tag
    return image, "latest"


class DockerContainer(ContainerHandle):
    def __init__(self, container):
        self._container = container
        self._waiter = None
        self._exit_status = None
        self._exit_error = None

    @property
    def id(self) -> str:
        return self._container.id

    @property
    def container(self):
        return self._container

    def watch_exit(self, register_timeout: float = 1.0) -> None:
        """
        Subscribe to the next exit on a helper thread. Must happen before start:
        an auto-removed container can be gone before a later wait request arrives.
        """
        issued = threading.Event()

        def _wait():
            issued.set()
            try:
                self._exit_status = self._container.wait(condition="next-exit")
            except Exception as e:
                self._exit_error = e

        self._waiter = threading.Thread(target=_wait, name=f"container-{self.id[:12]}-wait", daemon=True)
        self._waiter.start()
        issued.wait(register_timeout)

    def exit_status(self) -> dict:
        if self._waiter is None:
            return self._container.wait()
        self._waiter.join()
        if self._exit_error is not None:
            raise self._exit_error
        return self._exit_status


class DockerRuntime(ContainerRuntime):
    mode = "real"

    def __init__(self, endpoint: Optional[str] = None, client=None):
        self.endpoint = normalize_endpoint(endpoint)
        self._client = client
        self._lock = threading.Lock()

    @property
    def client(self):
        with self._lock:
            if self._client is None:
                try:
                    if self.endpoint:
                        self._client = docker.DockerClient(base_url=self.endpoint)
                    else:
                        self._client = docker.from_env()
                except DockerException as e:
                    raise EngineUnavailableError(f"Container engine unreachable: {e}") from e
            return self._client

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (DockerException, EngineUnavailableError) as e:
            logging.warning(f"Container engine ping failed: {e}")
            return False

    def image_present(self, image: str) -> bool:
        try:
            self.client.images.get(image)
            return True
        except ImageNotFound:
            return False
        except (DockerException, EngineUnavailableError) as e:
            logging.warning(f"Image inspect failed for {image}: {e}")
            return False

    def ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
            return
        except ImageNotFound:
            pass
        except APIError as e:
            raise ImagePullError(f"Failed to inspect image {image}: {e.explanation or e}") from e

        repository, tag = split_image(image)
        logging.info(f"Pulling image {image}")
        try:
            for frame in self.client.api.pull(repository, tag=tag, stream=True, decode=True):
                if "error" in frame:
                    raise ImagePullError(f"Failed to pull image {image}: {frame['error']}")
                status = frame.get("status")
                if status and frame.get("id") is None:
                    logging.info(f"Pull {image}: {status}")
        except DockerException as e:
            raise ImagePullError(f"Failed to pull image {image}: {e}") from e
        logging.info(f"Pulled image {image}")

    def create(self, spec: ContainerSpec) -> DockerContainer:
        try:
            container = self.client.containers.create(
                image=spec.image,
                command=list(spec.command),
                name=spec.name,
                labels=spec.labels,
                detach=True,
                tty=False,
                stdin_open=False,
                auto_remove=True,
                nano_cpus=int(spec.cpu_limit * 1_000_000_000),
                mem_limit=f"{spec.memory_limit_mb}m",
            )
        except DockerException as e:
            raise ContainerCreateError(f"Failed to create container from {spec.image}: {e}") from e
        return DockerContainer(container)

    def attach(self, handle: DockerContainer) -> Iterator[OutputChunk]:
        try:
            frames = handle.container.attach(stdout=True, stderr=True, stream=True, logs=True, demux=True)
        except DockerException as e:
            raise StreamError(f"Failed to attach to container {handle.id}: {e}") from e
        return self._demux(handle, frames)

    def _demux(self, handle, frames) -> Iterator[OutputChunk]:
        try:
            for stdout, stderr in frames:
                if stdout:
                    yield OutputChunk(STDOUT, stdout.decode("utf-8", errors="replace"))
                if stderr:
                    yield OutputChunk(STDERR, stderr.decode("utf-8", errors="replace"))
        except NotFound:
            # container went away mid-stream (stopped and auto-removed)
            return
        except DockerException as e:
            raise StreamError(f"Output stream failed for container {handle.id}: {e}") from e

    def start(self, handle: DockerContainer) -> None:
        handle.watch_exit()
        try:
            handle.container.start()
        except DockerException as e:
            raise ContainerCreateError(f"Failed to start container {handle.id}: {e}") from e

    def wait(self, handle: DockerContainer) -> int:
        try:
            result = handle.exit_status()
        except NotFound as e:
            raise StreamError(f"Container {handle.id} was removed before its exit status was collected") from e
        except DockerException as e:
            raise StreamError(f"Failed waiting on container {handle.id}: {e}") from e
        return int(result.get("StatusCode", -1))

    def stop(self, handle: DockerContainer, grace_seconds: int = 0) -> None:
        try:
            handle.container.stop(timeout=grace_seconds)
        except DockerException as e:
            logging.debug(f"Stop ignored for container {handle.id}: {e}")

    def remove(self, handle: DockerContainer, force: bool = True) -> None:
        try:
            handle.container.remove(force=force)
        except DockerException as e:
            logging.debug(f"Remove ignored for container {handle.id}: {e}")
