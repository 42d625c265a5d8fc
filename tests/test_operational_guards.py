"""Kill switch and maintenance mode."""

import pytest
from fastapi.testclient import TestClient

import itemtraxx.app as app_module
from itemtraxx.config import Settings
from itemtraxx.service.errors import ServiceUnavailableError
from itemtraxx.service.guards import OperationalGuards, is_local_origin
from itemtraxx.service.runtime import get_runtime
from itemtraxx.storage.models import Role


@pytest.mark.parametrize(
    "origin,expected",
    [
        ("http://localhost:5173", True),
        ("http://127.0.0.1:8080", True),
        ("http://192.168.1.20:5173", True),
        ("http://app.localhost", True),
        ("https://itemtraxx.com", False),
        ("https://8.8.8.8", False),
        (None, False),
        ("not a url", False),
    ],
)
def test_is_local_origin(origin, expected):
    assert is_local_origin(origin) is expected


class TestGuards:
    def test_killswitch_blocks_remote_writes(self):
        guards = OperationalGuards(Settings(killswitch_enabled=True))
        with pytest.raises(ServiceUnavailableError) as excinfo:
            guards.ensure_writes_allowed("https://itemtraxx.com")
        assert excinfo.value.detail == {"reason": "killswitch"}
        guards.ensure_writes_allowed("http://localhost:5173")

    def test_killswitch_off(self):
        OperationalGuards(Settings()).ensure_writes_allowed("https://itemtraxx.com")

    def test_maintenance(self):
        guards = OperationalGuards(Settings(maintenance_mode=True, maintenance_message="Back soon"))
        with pytest.raises(ServiceUnavailableError) as excinfo:
            guards.ensure_not_in_maintenance()
        assert excinfo.value.message == "Back soon"


def _seed_and_login(client):
    runtime = get_runtime()
    tenant = runtime.store.create_tenant("Lincoln High", access_code="LINC-1")
    runtime.auth.register_profile("admin@lincoln.test", "pw-admin-1", Role.TENANT_ADMIN, tenant_id=tenant.id)
    runtime.auth.register_profile("desk@lincoln.test", "pw-desk-1", Role.TENANT_USER, tenant_id=tenant.id)
    runtime.auth.register_profile("root@itemtraxx.test", "pw-root-1", Role.SUPER_ADMIN)
    admin = client.post("/v1/auth/login", json={"email": "admin@lincoln.test", "password": "pw-admin-1"})
    root = client.post("/v1/auth/login", json={"email": "root@itemtraxx.test", "password": "pw-root-1"})
    return tenant, admin.json()["data"]["access_token"], root.json()["data"]["access_token"]


class TestEndpoints:
    def test_maintenance_blocks_admin_ops_and_lookup_but_not_super_ops(self):
        client = TestClient(app_module.app)
        _, admin_token, root_token = _seed_and_login(client)
        get_runtime().settings.maintenance_mode = True

        admin = client.post(
            "/v1/admin-ops",
            json={"action": "list_sessions", "payload": {}},
            headers={"Authorization": f"Bearer {admin_token}"},
        )
        assert admin.status_code == 503
        assert admin.json()["code"] == "service_unavailable"

        lookup = client.post("/v1/auth/tenant-lookup", json={"access_code": "LINC-1"})
        assert lookup.status_code == 503

        sup = client.post(
            "/v1/super-ops",
            json={"action": "list_tenants", "payload": {}},
            headers={"Authorization": f"Bearer {root_token}"},
        )
        assert sup.status_code == 200

    def test_killswitch_blocks_remote_mutations_only(self):
        client = TestClient(app_module.app)
        _, admin_token, _ = _seed_and_login(client)
        get_runtime().settings.killswitch_enabled = True
        headers = {"Authorization": f"Bearer {admin_token}", "X-Device-ID": "dev-1"}

        remote = client.post(
            "/v1/admin-ops",
            json={"action": "touch_session", "payload": {}},
            headers={**headers, "Origin": "https://itemtraxx.com"},
        )
        assert remote.status_code == 503
        assert remote.json()["details"] == {"reason": "killswitch"}

        local = client.post(
            "/v1/admin-ops",
            json={"action": "touch_session", "payload": {}},
            headers={**headers, "Origin": "http://localhost:5173"},
        )
        assert local.status_code == 200

        read = client.post(
            "/v1/admin-ops",
            json={"action": "list_sessions", "payload": {}},
            headers={**headers, "Origin": "https://itemtraxx.com"},
        )
        assert read.status_code == 200
