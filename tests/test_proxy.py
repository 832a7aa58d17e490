"""Tests for the proxy gateway."""
import os
import socket
import sys
import time
from unittest.mock import MagicMock

import pytest
import requests

from controlplane.errors import (
    NotFoundError,
    ServiceUnavailableError,
    UpstreamTransportError,
)
from controlplane.sidecar.proxy import ProxyGateway, ProxyRequest
from controlplane.sidecar.supervisor import (
    CREDENTIAL_ENV_VARS,
    SidecarState,
    SidecarSupervisor,
)

CREDENTIALS = {name: "x" for name in CREDENTIAL_ENV_VARS}


def ready_supervisor():
    supervisor = MagicMock(spec=SidecarSupervisor)
    supervisor.state = SidecarState.READY
    supervisor.base_url = "http://127.0.0.1:8090"
    return supervisor


def upstream_response(status=200, headers=None, body=b"{}"):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = headers or {"Content-Type": "application/json"}
    resp.content = body
    return resp


class TestPrefix:
    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/graphlit", "/"),
            ("/graphlit/", "/"),
            ("/graphlit/mcp", "/mcp"),
            ("/graphlit/a/b?x", "/a/b?x"),
        ],
    )
    def test_prefix_stripped(self, path, expected):
        gateway = ProxyGateway(ready_supervisor())
        assert gateway.upstream_path(path) == expected

    @pytest.mark.parametrize("path", ["/", "/graphlitx", "/other/graphlit"])
    def test_non_matching_paths(self, path):
        gateway = ProxyGateway(ready_supervisor())
        assert not gateway.matches(path)
        with pytest.raises(NotFoundError):
            gateway.upstream_path(path)

    def test_prefix_normalised(self):
        assert ProxyGateway(ready_supervisor(), prefix="sidecar/").prefix == "/sidecar"


class TestForward:
    @pytest.mark.parametrize("state", [SidecarState.ABSENT, SidecarState.SPAWNING, SidecarState.EXITED])
    def test_fails_fast_when_not_ready(self, state):
        supervisor = ready_supervisor()
        supervisor.state = state
        session = MagicMock()
        gateway = ProxyGateway(supervisor, session=session)
        with pytest.raises(ServiceUnavailableError) as excinfo:
            gateway.forward(ProxyRequest("GET", "/graphlit/mcp"))
        assert excinfo.value.status == 503
        session.request.assert_not_called()

    def test_forwards_request_verbatim(self):
        session = MagicMock()
        session.request.return_value = upstream_response(
            status=201,
            headers={"Content-Type": "text/plain", "Transfer-Encoding": "chunked", "X-Trace": "1"},
            body=b"created",
        )
        gateway = ProxyGateway(ready_supervisor(), session=session, timeout=7)
        response = gateway.forward(
            ProxyRequest(
                method="post",
                path="/graphlit/mcp",
                headers={"Host": "public.example", "Content-Type": "application/json"},
                body=b'{"a": 1}',
                query={"q": "x"},
            )
        )

        session.request.assert_called_once_with(
            "POST",
            "http://127.0.0.1:8090/mcp",
            headers={"Content-Type": "application/json"},
            params={"q": "x"},
            data=b'{"a": 1}',
            timeout=7,
            allow_redirects=False,
        )
        assert response.status == 201
        assert response.body == b"created"
        assert response.headers == {"Content-Type": "text/plain", "X-Trace": "1"}

    def test_request_hop_by_hop_headers_dropped(self):
        session = MagicMock()
        session.request.return_value = upstream_response()
        gateway = ProxyGateway(ready_supervisor(), session=session)
        gateway.forward(
            ProxyRequest(
                method="POST",
                path="/graphlit/mcp",
                headers={
                    "Connection": "keep-alive",
                    "Transfer-Encoding": "chunked",
                    "Content-Length": "8",
                    "Content-Encoding": "gzip",
                    "Authorization": "Bearer t",
                },
                body=b"\x1f\x8b...",
            )
        )
        sent = session.request.call_args.kwargs["headers"]
        assert sent == {"Content-Encoding": "gzip", "Authorization": "Bearer t"}

    def test_upstream_error_status_passes_through(self):
        session = MagicMock()
        session.request.return_value = upstream_response(status=500, body=b"oops")
        response = ProxyGateway(ready_supervisor(), session=session).forward(
            ProxyRequest("GET", "/graphlit/")
        )
        assert response.status == 500

    def test_transport_failure(self):
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError("connection refused")
        gateway = ProxyGateway(ready_supervisor(), session=session)
        with pytest.raises(UpstreamTransportError) as excinfo:
            gateway.forward(ProxyRequest("GET", "/graphlit/mcp"))
        assert excinfo.value.status == 502
        assert session.request.call_count == 1

    def test_from_config(self):
        gateway = ProxyGateway.from_config({"proxy": {"prefix": "/tools", "timeout": 3}}, ready_supervisor())
        assert gateway.prefix == "/tools"
        assert gateway.timeout == 3.0


@pytest.mark.skipif(os.name != "posix", reason="needs POSIX process groups")
class TestForwardAfterReadiness:
    def test_accepts_only_after_ready(self, wait_for):
        script = "import time; time.sleep(0.5); print('READY', flush=True); time.sleep(30)"
        supervisor = SidecarSupervisor(
            executable=sys.executable,
            module=None,
            args=["-c", script],
            credentials=CREDENTIALS,
            health_path=None,
            ready_pattern="READY",
        )
        session = MagicMock()
        session.request.return_value = upstream_response()
        gateway = ProxyGateway(supervisor, session=session)

        with pytest.raises(ServiceUnavailableError):
            gateway.forward(ProxyRequest("GET", "/graphlit/mcp"))
        supervisor.start()
        try:
            with pytest.raises(ServiceUnavailableError):
                gateway.forward(ProxyRequest("GET", "/graphlit/mcp"))
            session.request.assert_not_called()

            assert wait_for(lambda: supervisor.state is SidecarState.READY)
            assert gateway.forward(ProxyRequest("GET", "/graphlit/mcp")).status == 200
        finally:
            supervisor.terminate(grace_seconds=1)

        with pytest.raises(ServiceUnavailableError):
            gateway.forward(ProxyRequest("GET", "/graphlit/mcp"))

    def test_real_upstream(self, wait_for):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        supervisor = SidecarSupervisor(
            executable=sys.executable,
            module=None,
            args=["-m", "http.server", str(port), "--bind", "127.0.0.1"],
            credentials=CREDENTIALS,
            port=port,
            health_path="/",
            probe_interval=0.1,
        )
        gateway = ProxyGateway(supervisor, prefix="/graphlit", timeout=5)
        supervisor.start()
        try:
            assert wait_for(lambda: supervisor.state is SidecarState.READY)
            assert gateway.forward(ProxyRequest("GET", "/graphlit/")).status == 200
            assert gateway.forward(ProxyRequest("GET", "/graphlit/no-such-file")).status == 404
        finally:
            supervisor.terminate(grace_seconds=1)

        time.sleep(0.2)
        with pytest.raises(ServiceUnavailableError):
            gateway.forward(ProxyRequest("GET", "/graphlit/"))
