# Project RoboOrchard
#
# Copyright (c) 2024-2025 Horizon Robotics. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
# implied. See the License for the specific language governing
# permissions and limitations under the License.

import asyncio

import pytest
from fastapi.testclient import TestClient
from port_register.config import PortRegisterCfg
from port_register.registry import PortRegistry
from port_register.server import create_app
from port_register.service import PortRegisterService
from port_register.store import JsonFileStore


def _register(client: TestClient, port=8080, agent="a", reason="dev", **kw):
    return client.post(
        "/ports/register",
        json={"port": port, "agent": agent, "reason": reason, **kw},
    )


class TestRegisterEndpoint:
    def test_created(self, client: TestClient):
        response = _register(client)
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["registration"]["port"] == 8080
        assert body["registration"]["agent"] == "a"
        assert body["registration"]["id"].startswith("8080-")
        assert "expiresAt" in body["registration"]

    def test_conflict_reports_owner(self, client: TestClient):
        _register(client, agent="a")
        response = _register(client, agent="b")
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "Port 8080 is already registered"
        assert body["registeredBy"]["agent"] == "a"

    def test_validation(self, client: TestClient):
        assert _register(client, port=70000).status_code == 400
        assert _register(client, agent=" ").status_code == 400
        response = _register(client, reason=None)
        assert response.status_code == 400
        assert response.json()["error"] == "Missing required field: reason"

    def test_non_positive_ttl_rejected(self, client: TestClient):
        assert _register(client, ttlMinutes=0).status_code == 400
        assert _register(client, ttlMinutes=-1).status_code == 400

    @pytest.mark.parametrize("port", ["+-5", "--80", "²", "8080.5"])
    def test_malformed_port_string(self, client: TestClient, port):
        response = _register(client, port=port)
        assert response.status_code == 400
        assert client.get("/ports").json()["count"] == 0

    def test_malformed_body(self, client: TestClient):
        response = client.post(
            "/ports/register",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert "error" in response.json()


class TestListEndpoints:
    def test_list_annotates_os_state(self, client: TestClient, provider):
        provider.bind(8080, pid=42, name="node")
        _register(client, port=8080)
        _register(client, port=9090)
        response = client.get("/ports")
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 2
        first, second = body["registrations"]
        assert first["osInUse"] is True
        assert first["osPid"] == 42
        assert first["osProcess"] == "node"
        assert second["osInUse"] is False

    def test_list_survives_scan_outage(self, client: TestClient, provider):
        _register(client, port=8080)
        _register(client, port=9090)
        provider.bindings = None
        response = client.get("/ports")
        assert response.status_code == 200
        regs = response.json()["registrations"]
        assert [r["osInUse"] for r in regs] == [None, None]
        assert provider.names_calls == 0

    def test_list_prunes_expired(self, client: TestClient, clock):
        _register(client, port=8080, ttlMinutes=1)
        clock.advance(minutes=2)
        assert client.get("/ports").json()["count"] == 0

    def test_list_with_undecodable_data_file(self, tmp_path, provider, clock):
        path = tmp_path / "ports.json"
        path.write_bytes(b"\xff\xfe garbage")
        registry = PortRegistry(JsonFileStore(str(path)), clock=clock)
        app = create_app(
            service=PortRegisterService(registry, provider),
            cfg=PortRegisterCfg(),
        )
        with TestClient(app) as client:
            response = client.get("/ports")
            assert response.status_code == 200
            assert response.json()["count"] == 0
            assert _register(client, port=8080).status_code == 201
        assert [r.port for r in asyncio.run(registry.snapshot())] == [8080]

    def test_system_ports(self, client: TestClient, provider):
        provider.bind(8080, pid=1, name="python")
        provider.bind(53, pid=2, proto="UDP")
        _register(client, port=8080, agent="web")
        response = client.get("/ports/system")
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        dns, web = body["ports"]
        assert dns["port"] == 53
        assert dns["state"] == "UDP"
        assert dns["registered"] is False
        assert dns["registration"] is None
        assert web["process"] == "python"
        assert web["registered"] is True
        assert web["registration"]["agent"] == "web"

    def test_system_ports_scan_outage(self, client: TestClient, provider):
        provider.bindings = None
        response = client.get("/ports/system")
        assert response.status_code == 500
        assert "error" in response.json()

    def test_scanner_runs_once_per_request(
        self, client: TestClient, provider
    ):
        for port in (8080, 8081, 8082):
            _register(client, port=port)
        client.get("/ports")
        assert provider.scan_calls == 1
        assert provider.names_calls == 1


class TestCheckEndpoint:
    def test_registered_then_released(self, client: TestClient):
        _register(client, agent="a")
        body = client.get("/ports/check/8080").json()
        assert body["available"] is False
        assert body["registeredBy"]["agent"] == "a"

        response = client.request(
            "DELETE", "/ports/8080", json={"agent": "a"}
        )
        assert response.status_code == 200
        assert response.json()["released"]["agent"] == "a"

        body = client.get("/ports/check/8080").json()
        assert body["available"] is True
        assert body["registeredBy"] is None
        assert body["osInUse"] is False

    def test_os_bound(self, client: TestClient, provider):
        provider.bind(3000)
        body = client.get("/ports/check/3000").json()
        assert body["available"] is False
        assert body["osInUse"] is True

    def test_scan_outage(self, client: TestClient, provider):
        provider.bindings = None
        body = client.get("/ports/check/3000").json()
        assert body["available"] is False
        assert body["osInUse"] is None

    def test_invalid_port(self, client: TestClient):
        assert client.get("/ports/check/0").status_code == 400
        assert client.get("/ports/check/99999").status_code == 400
        assert client.get("/ports/check/http").status_code == 400
        assert client.get("/ports/check/+-5").status_code == 400
        assert client.get("/ports/check/--80").status_code == 400


class TestHeartbeatEndpoint:
    def test_refresh(self, client: TestClient, clock):
        _register(client, ttlMinutes=1)
        clock.advance(minutes=0.5)
        response = client.post("/ports/8080/heartbeat", json={"agent": "a"})
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["expiresAt"].endswith("Z")
        clock.advance(minutes=10)
        assert client.get("/ports").json()["count"] == 1

    def test_without_body(self, client: TestClient):
        _register(client)
        assert client.post("/ports/8080/heartbeat").status_code == 200

    def test_agent_mismatch(self, client: TestClient):
        created = _register(client, agent="a").json()["registration"]
        response = client.post("/ports/8080/heartbeat", json={"agent": "b"})
        assert response.status_code == 403
        (stored,) = client.get("/ports").json()["registrations"]
        assert stored["expiresAt"] == created["expiresAt"]
        assert stored["lastHeartbeat"] is None

    def test_not_registered(self, client: TestClient):
        response = client.post("/ports/8080/heartbeat", json={"agent": "a"})
        assert response.status_code == 404
        assert response.json()["error"] == "Port 8080 is not registered"

    @pytest.mark.parametrize("port", ["0", "70000", "abc", "+-5", "--80"])
    def test_invalid_port(self, client: TestClient, port):
        response = client.post(f"/ports/{port}/heartbeat", json={"agent": "a"})
        assert response.status_code == 400
        assert "error" in response.json()


class TestReleaseEndpoints:
    def test_agent_mismatch(self, client: TestClient):
        _register(client, agent="a")
        response = client.request(
            "DELETE", "/ports/8080", json={"agent": "b"}
        )
        assert response.status_code == 403
        assert client.get("/ports").json()["count"] == 1

    def test_without_agent(self, client: TestClient):
        _register(client, agent="a")
        assert client.delete("/ports/8080").status_code == 200

    def test_not_registered(self, client: TestClient):
        assert client.delete("/ports/8080").status_code == 404

    @pytest.mark.parametrize("port", ["0", "70000", "abc", "+-5", "--80"])
    def test_invalid_port(self, client: TestClient, port):
        _register(client, port=8080)
        response = client.delete(f"/ports/{port}")
        assert response.status_code == 400
        assert "error" in response.json()
        assert client.get("/ports").json()["count"] == 1

    def test_clear_all(self, client: TestClient):
        _register(client, port=8080)
        _register(client, port=8081, agent="b")
        response = client.delete("/ports")
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["cleared"] == 2
        assert client.get("/ports").json()["count"] == 0


class TestSuggestEndpoint:
    def test_skips_registered(self, client: TestClient):
        _register(client, port=5000)
        response = client.get("/suggest", params={"min": 5000, "max": 5002})
        assert response.status_code == 200
        assert response.json()["port"] == 5001
        assert response.json()["osChecked"] is True

    def test_none_available(self, client: TestClient, provider):
        _register(client, port=5000)
        _register(client, port=5001)
        provider.bind(5002)
        response = client.get("/suggest", params={"min": 5000, "max": 5002})
        assert response.status_code == 404
        assert "5000-5002" in response.json()["error"]

    def test_default_range(self, client: TestClient, provider):
        provider.bind(3000)
        assert client.get("/suggest").json()["port"] == 3001

    def test_scan_outage(self, client: TestClient, provider):
        provider.bindings = None
        body = client.get("/suggest", params={"min": 6000}).json()
        assert body["port"] == 6000
        assert body["osChecked"] is False

    def test_invalid_query(self, client: TestClient):
        assert client.get("/suggest?min=abc").status_code == 400
        assert client.get("/suggest?min=10&max=5").status_code == 400
        response = client.get("/suggest", params={"min": "+-5"})
        assert response.status_code == 400
        response = client.get("/suggest", params={"max": "--80"})
        assert response.status_code == 400


class TestServerPlumbing:
    def test_api_prefix(self, client: TestClient):
        _register(client)
        assert client.get("/api/ports").json()["count"] == 1
        assert client.get("/api/ports/check/8080").status_code == 200

    def test_cors_headers(self, client: TestClient):
        response = client.get("/ports")
        assert response.headers["access-control-allow-origin"] == "*"
        error = client.get("/ports/check/0")
        assert error.headers["access-control-allow-origin"] == "*"

    def test_options_request(self, client: TestClient):
        response = client.options("/ports/register")
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_health(self, client: TestClient):
        assert client.get("/health").json() == {"status": "ok"}
