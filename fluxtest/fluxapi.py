"""Read-only client for the GitOps controller's HTTP API.

The harness consumes one endpoint, ``GET {base}/v6/services?namespace=NS``,
which lists the workloads Flux manages and the image each container is
currently running. Only the fields the harness reads are modelled.

Example:
    >>> with FluxClient("http://192.168.99.100:30080/api/flux", reporter) as flux:
    ...     flux.container_images("default", "default:deployment/helloworld")
    {'helloworld': 'quay.io/weaveworks/helloworld:master-a000001', ...}
"""

from __future__ import annotations

from types import TracebackType
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fluxtest.errors import ControllerAPIError
from fluxtest.reporting import Reporter

API_VERSION = "v6"
DEFAULT_REQUEST_TIMEOUT = 5.0


class ImageStatus(BaseModel):
    """An image reference as reported by the controller."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(default="", alias="ID")


class ContainerStatus(BaseModel):
    """A container of a managed workload."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    name: str = Field(..., alias="Name")
    current: ImageStatus = Field(default_factory=ImageStatus, alias="Current")


class ControllerStatus(BaseModel):
    """A workload managed by the controller, e.g. ``default:deployment/helloworld``."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(..., alias="ID")
    status: str = Field(default="", alias="Status")
    containers: list[ContainerStatus] = Field(default_factory=list, alias="Containers")

    @field_validator("containers", mode="before")
    @classmethod
    def _null_containers(cls, value: Any) -> Any:
        # The API encodes an empty container list as null
        return [] if value is None else value

    def images(self) -> dict[str, str]:
        """Map container name to current image reference."""
        return {c.name: c.current.id for c in self.containers}


class FluxClient:
    """Client for the controller's services endpoint.

    Attributes:
        base_url: API root, e.g. ``http://<node>:30080/api/flux``.
        reporter: Where requests are logged.
    """

    def __init__(
        self,
        base_url: str,
        reporter: Reporter,
        *,
        client: httpx.Client | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.reporter = reporter
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=timeout)

    def __enter__(self) -> FluxClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def list_services(self, namespace: str) -> list[ControllerStatus]:
        """List the workloads the controller manages in ``namespace``.

        Raises:
            ControllerAPIError: On transport errors, non-2xx responses, or a
                body that isn't a list of workloads.
        """
        url = f"{self.base_url}/{API_VERSION}/services"
        self.reporter.log.debug("flux_api_request", url=url, namespace=namespace)
        try:
            response = self._client.get(url, params={"namespace": namespace})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise ControllerAPIError(url, str(exc)) from exc
        except ValueError as exc:
            raise ControllerAPIError(url, f"invalid JSON: {exc}") from exc

        if payload is None:
            return []
        if not isinstance(payload, list):
            raise ControllerAPIError(url, f"expected a JSON list, got {type(payload).__name__}")
        try:
            return [ControllerStatus.model_validate(item) for item in payload]
        except ValidationError as exc:
            raise ControllerAPIError(url, f"unexpected workload entry: {exc}") from exc

    def container_images(self, namespace: str, controller_id: str) -> dict[str, str]:
        """Return ``{container name: image}`` for one workload, {} if unmanaged."""
        for controller in self.list_services(namespace):
            if controller.id == controller_id:
                return controller.images()
        return {}


__all__ = [
    "API_VERSION",
    "ContainerStatus",
    "ControllerStatus",
    "FluxClient",
    "ImageStatus",
]
