"""
Reverse proxy towards the sidecar.

Requests whose path starts with the gateway prefix are forwarded to the
sidecar's local address with the prefix stripped. Nothing is queued:
while the sidecar is not ready the gateway refuses immediately, and a
transport failure is reported once without retrying.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from controlplane.config import section
from controlplane.errors import (
    NotFoundError,
    ServiceUnavailableError,
    UpstreamTransportError,
)
from controlplane.sidecar.supervisor import SidecarState, SidecarSupervisor

logger = logging.getLogger(__name__)

# requests decodes bodies and manages framing itself
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-encoding",
    "content-length",
}
# request bodies are forwarded as received, so their encoding header stays
REQUEST_EXCLUDED_HEADERS = (HOP_BY_HOP_HEADERS - {"content-encoding"}) | {"host"}


@dataclass
class ProxyRequest:
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    query: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProxyResponse:
    status: int
    headers: Dict[str, str]
    body: bytes


class ProxyGateway:
    """
    Forwards prefix-mounted requests to the supervised sidecar.
    """

    def __init__(
        self,
        supervisor: SidecarSupervisor,
        prefix: str = "/graphlit",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.supervisor = supervisor
        self.prefix = "/" + prefix.strip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], supervisor: SidecarSupervisor) -> "ProxyGateway":
        proxy_cfg = section(cfg, "proxy")
        return cls(
            supervisor=supervisor,
            prefix=proxy_cfg.get("prefix", "/graphlit"),
            timeout=float(proxy_cfg.get("timeout", 30)),
        )

    def matches(self, path: str) -> bool:
        return path == self.prefix or path.startswith(self.prefix + "/")

    def upstream_path(self, path: str) -> str:
        if not self.matches(path):
            raise NotFoundError(f"Path '{path}' is not under the proxy prefix '{self.prefix}'.")
        return path[len(self.prefix):] or "/"

    def forward(self, request: ProxyRequest) -> ProxyResponse:
        """
        Forward `request` to the sidecar.

        Raises:
            NotFoundError: The path is outside the gateway prefix.
            ServiceUnavailableError: The sidecar is not ready.
            UpstreamTransportError: The sidecar could not be reached.
        """
        target = self.upstream_path(request.path)
        state = self.supervisor.state
        if state is not SidecarState.READY:
            raise ServiceUnavailableError(
                f"Sidecar is not ready (state: {state.value}).",
                state=state.value,
            )

        url = self.supervisor.base_url + target
        headers = {
            k: v for k, v in request.headers.items() if k.lower() not in REQUEST_EXCLUDED_HEADERS
        }
        try:
            resp = self.session.request(
                request.method.upper(),
                url,
                headers=headers,
                params=request.query or None,
                data=request.body or None,
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            logger.warning("Proxy request to %s failed: %s", url, exc)
            raise UpstreamTransportError(f"Failed to reach sidecar: {exc}", url=url) from exc

        return ProxyResponse(
            status=resp.status_code,
            headers={
                k: v for k, v in resp.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS
            },
            body=resp.content,
        )
