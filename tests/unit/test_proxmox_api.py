"""
Unit tests for the Proxmox REST client, served by an in-process httpx transport
"""
import httpx
import pytest

from proxmox2mqtt.config import Settings
from proxmox2mqtt.core.proxmox_api import ProxmoxAPI, create_container_key
from proxmox2mqtt.core.proxmox_errors import (
    BackupStartError,
    ProxmoxAPIError,
    ProxmoxConnectionError,
    ProxmoxNotFoundError,
)

UPID = "UPID:pve1:0000AAAA:00000001:65E16A00:vzdump:101:root@pam:"


def _api(handler, **overrides):
    values = {
        "proxmox_host": "pve.test",
        "proxmox_token_id": "root@pam!test",
        "proxmox_token_secret": "secret",
    }
    values.update(overrides)
    return ProxmoxAPI(Settings(**values), transport=httpx.MockTransport(handler))


def _json(data, status_code=200):
    return httpx.Response(status_code, json={"data": data})


@pytest.mark.unit
class TestContainerKey:
    @pytest.mark.parametrize("container,expected", [
        ({"vmid": 101, "name": "Web-Server"}, "101_web_server"),
        ({"vmid": 102, "name": "db..primary  01"}, "102_db_primary_01"),
        ({"vmid": 103}, "103_ct103"),
    ])
    def test_create_container_key(self, container, expected):
        assert create_container_key(container) == expected


@pytest.mark.unit
class TestConnection:
    @pytest.mark.asyncio
    async def test_token_header_is_sent(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["url"] = str(request.url)
            return _json([])

        api = _api(handler)
        await api.get_nodes()

        assert seen["auth"] == "PVEAPIToken=root@pam!test=secret"
        assert seen["url"] == "https://pve.test:8006/api2/json/nodes"
        assert api.is_connected is True
        await api.close()

    @pytest.mark.asyncio
    async def test_ticket_login_sets_cookie_and_csrf(self):
        seen = {}

        def handler(request):
            if request.url.path.endswith("/access/ticket"):
                return _json({"ticket": "PVE:ticket", "CSRFPreventionToken": "csrf"})
            seen["cookie"] = request.headers.get("Cookie")
            seen["csrf"] = request.headers.get("CSRFPreventionToken")
            return _json([])

        api = _api(handler, proxmox_token_id=None, proxmox_token_secret=None, proxmox_password="pw")
        await api.get_nodes()

        assert "PVEAuthCookie=PVE:ticket" in seen["cookie"]
        assert seen["csrf"] == "csrf"
        await api.close()

    @pytest.mark.asyncio
    async def test_ticket_login_failure(self):
        api = _api(
            lambda request: httpx.Response(401),
            proxmox_token_id=None,
            proxmox_token_secret=None,
        )

        with pytest.raises(ProxmoxAPIError) as exc_info:
            await api.connect()
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_transport_error_maps_to_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        api = _api(handler)

        with pytest.raises(ProxmoxConnectionError):
            await api.get_nodes()
        assert api.is_connected is False

    @pytest.mark.asyncio
    async def test_http_errors(self):
        def handler(request):
            if request.url.path.endswith("/missing"):
                return httpx.Response(404)
            return httpx.Response(403)

        api = _api(handler)

        with pytest.raises(ProxmoxNotFoundError):
            await api._request("GET", "/missing")
        with pytest.raises(ProxmoxAPIError) as exc_info:
            await api._request("GET", "/nodes")
        assert exc_info.value.status_code == 403


@pytest.mark.unit
class TestContainers:
    @pytest.mark.asyncio
    async def test_get_all_containers_skips_ignored_and_failing_nodes(self):
        def handler(request):
            path = request.url.path
            if path.endswith("/nodes"):
                return _json([{"node": "pve1"}, {"node": "pve2"}])
            if path.endswith("/nodes/pve1/lxc"):
                return _json([
                    {"vmid": 101, "name": "web", "tags": "prod"},
                    {"vmid": 102, "name": "scratch", "tags": "ha-ignore;test"},
                ])
            return httpx.Response(500)

        api = _api(handler)
        containers = await api.get_all_containers()

        assert [c["key"] for c in containers] == ["101_web"]
        assert containers[0]["node"] == "pve1"

    @pytest.mark.asyncio
    async def test_container_and_node_actions(self):
        calls = []

        def handler(request):
            calls.append((request.method, request.url.path, request.content.decode()))
            return _json("UPID:pve1:x")

        api = _api(handler)
        await api.reboot_container("pve1", 101)
        await api.shutdown_node("pve2")

        assert calls[0][:2] == ("POST", "/api2/json/nodes/pve1/lxc/101/status/reboot")
        assert calls[1][:2] == ("POST", "/api2/json/nodes/pve2/status")
        assert "command=shutdown" in calls[1][2]


@pytest.mark.unit
class TestBackupTasks:
    @pytest.mark.asyncio
    async def test_list_active_backup_tasks(self):
        seen_params = []

        def handler(request):
            if request.url.path.endswith("/nodes"):
                return _json([{"node": "pve1"}])
            seen_params.append(dict(request.url.params))
            return _json([
                {"upid": UPID, "node": "pve1", "type": "vzdump", "id": "101", "starttime": 1709251200},
                {"upid": "UPID:pve1:other", "type": "vzcreate"},
            ])

        api = _api(handler)
        tasks = await api.list_active_backup_tasks()

        assert seen_params == [{"source": "active", "typefilter": "vzdump"}]
        assert len(tasks) == 1
        assert tasks[0].task_id == UPID
        assert tasks[0].entity_id == "101"
        assert tasks[0].start_time == 1709251200

    @pytest.mark.asyncio
    async def test_get_task_status(self):
        def handler(request):
            assert request.url.raw_path.decode().endswith("/status")
            return _json({"status": "stopped", "exitstatus": "OK"})

        api = _api(handler)
        status = await api.get_task_status("pve1", UPID)

        assert status.status == "stopped"
        assert status.exit_status == "OK"

    @pytest.mark.asyncio
    async def test_get_task_status_not_found_returns_none(self):
        api = _api(lambda request: httpx.Response(404))

        assert await api.get_task_status("pve1", UPID) is None

    @pytest.mark.parametrize("code", [500, 503])
    @pytest.mark.asyncio
    async def test_get_task_status_server_errors_raise(self, code):
        api = _api(lambda request: httpx.Response(code))

        with pytest.raises(ProxmoxAPIError) as exc_info:
            await api.get_task_status("pve1", UPID)

        assert not isinstance(exc_info.value, ProxmoxNotFoundError)
        assert exc_info.value.status_code == code

    @pytest.mark.asyncio
    async def test_get_task_log_pages(self, monkeypatch):
        monkeypatch.setattr("proxmox2mqtt.core.proxmox_api.LOG_PAGE_SIZE", 2)
        pages = {
            "0": [{"n": 1, "t": "a"}, {"n": 2, "t": "b"}],
            "2": [{"n": 3, "t": "c"}],
        }

        def handler(request):
            return _json(pages[request.url.params["start"]])

        api = _api(handler)
        lines = await api.get_task_log("pve1", UPID)

        assert [line.text for line in lines] == ["a", "b", "c"]
        assert lines[2].line_number == 3

    @pytest.mark.asyncio
    async def test_get_task_log_no_content(self):
        api = _api(lambda request: _json([{"n": 1, "t": "no content"}]))

        assert await api.get_task_log("pve1", UPID) == []

    @pytest.mark.asyncio
    async def test_start_backup(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = request.content.decode()
            return _json(UPID)

        api = _api(handler)
        upid = await api.start_backup("pve1", 101, mode="snapshot", compress="zstd", storage=None)

        assert upid == UPID
        assert seen["path"] == "/api2/json/nodes/pve1/vzdump"
        assert "vmid=101" in seen["body"]
        assert "mode=snapshot" in seen["body"]
        assert "storage" not in seen["body"]

    @pytest.mark.asyncio
    async def test_start_backup_without_upid_raises(self):
        api = _api(lambda request: _json(None))

        with pytest.raises(BackupStartError):
            await api.start_backup("pve1", 101)
