"""Docker helpers for the Redis integration tests."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

if TYPE_CHECKING:
    from docker.client import DockerClient
    from docker.models.containers import Container
else:
    DockerClient = Any  # type: ignore[misc,assignment]
    Container = Any  # type: ignore[misc,assignment]

REDIS_IMAGE = "redis:7-alpine"
REDIS_PORT = 6379


def get_docker_client() -> DockerClient:
    """Create a Docker client from environment settings."""
    import docker

    return docker.from_env()


def get_docker_host(client: DockerClient) -> str:
    """Resolve the host that published container ports are reachable on."""
    base_url = client.api.base_url
    if base_url.startswith(("unix://", "npipe://", "http+docker://")):
        return "localhost"
    return urlparse(base_url).hostname or "localhost"


@dataclass
class RedisService:
    """A running Redis container and how to reach it."""

    container: Container
    host: str

    @property
    def port(self) -> int:
        """Host port bound to the container's Redis port."""
        self.container.reload()
        key = f"{REDIS_PORT}/tcp"
        bindings = self.container.attrs["NetworkSettings"]["Ports"].get(key)
        if not bindings:
            raise RuntimeError(f"Port {key} not exposed on container {self.container.short_id}")
        return int(bindings[0]["HostPort"])

    def url(self, db: int = 0) -> str:
        """Connection URL for one logical database."""
        return f"redis://{self.host}:{self.port}/{db}"

    def stop(self) -> None:
        """Stop and remove the container."""
        self.container.remove(force=True, v=True)


@contextmanager
def run_redis(client: DockerClient, image: str = REDIS_IMAGE) -> Iterator[RedisService]:
    """Run a throwaway Redis on a random host port."""
    container = client.containers.run(
        image,
        detach=True,
        ports={f"{REDIS_PORT}/tcp": None},
        # No persistence; every test session starts empty
        command="redis-server --save '' --appendonly no",
    )
    service = RedisService(container=container, host=get_docker_host(client))
    try:
        yield service
    finally:
        service.stop()
