# tests/hypervisors/test_vcenter.py
from unittest.mock import MagicMock

import pytest
import requests

from selfservice.config import Settings, VCenterSettings
from selfservice.hypervisors.vcenter import (
    GIB,
    SESSION_CACHE_KEY,
    VCenterAPIError,
    VCenterClient,
    VCenterHypervisor,
)
from selfservice.utils.cache import TimedCache
from selfservice.services.exceptions import (
    CloneError,
    HypervisorConflictError,
    HypervisorVmNotFoundError,
    ValidationError,
)

TEMPLATE = {
    "memory": {"size_MiB": 2048},
    "cpu": {"count": 2},
    "disks": {"2000": {"capacity": 20 * GIB}},
}


@pytest.fixture
def vcenter_settings() -> Settings:
    return Settings(vcenter=VCenterSettings(
        url="https://vcenter.example.com", username="api", password="secret",
        cluster_id="domain-c8", folder_id="group-v42", datastore_name="ds1",
        templates={"Ubuntu": "lib-item-ubuntu"},
    ))


@pytest.fixture
def mock_client() -> MagicMock:
    client = MagicMock(spec=VCenterClient)
    client.template.return_value = TEMPLATE
    client.datastore_id.return_value = "datastore-11"
    client.deploy.return_value = "vm-301"
    return client


@pytest.fixture
def hypervisor(mock_client, vcenter_settings) -> VCenterHypervisor:
    return VCenterHypervisor(mock_client, vcenter_settings)


def deploy_spec(mock_client) -> dict:
    return mock_client.deploy.call_args.args[1]


class TestCreate:
    def test_request_at_template_floor_sends_no_customization(self, hypervisor, mock_client):
        """템플릿 이하의 요청은 hardware_customization 없이 배포하는지 테스트합니다."""
        # === Act ===
        result = hypervisor.create("web1", 1024, 1, 10, "u1", "User One", operating_system="Ubuntu")

        # === Assert ===
        spec = deploy_spec(mock_client)
        assert "hardware_customization" not in spec
        assert spec["name"] == "AUTO-u1-web1"
        assert spec["powered_on"] is True
        assert spec["placement"] == {"cluster": "domain-c8", "folder": "group-v42"}
        assert spec["disk_storage"] == {"datastore": "datastore-11"}
        assert (result.vmid, result.memory_mb, result.cpu_cores, result.disk_gb) == ("vm-301", 2048, 2, 20)

    def test_larger_request_customizes_only_what_grows(self, hypervisor, mock_client):
        hypervisor.create("web1", 4096, 2, 40, "u1", "User One", operating_system="Ubuntu")

        hardware = deploy_spec(mock_client)["hardware_customization"]
        assert hardware == {
            "memory_update": {"memory": 4096},
            "disks_to_update": {"2000": {"capacity": 40 * GIB}},
        }

    def test_unknown_operating_system_is_rejected(self, hypervisor, mock_client):
        with pytest.raises(ValidationError):
            hypervisor.create("web1", 1024, 1, 10, "u1", "User One", operating_system="Plan9")

        mock_client.deploy.assert_not_called()

    def test_existing_name_is_a_conflict(self, hypervisor, mock_client):
        mock_client.deploy.side_effect = VCenterAPIError("exists", status_code=400, error_type="ALREADY_EXISTS")

        with pytest.raises(HypervisorConflictError):
            hypervisor.create("web1", 1024, 1, 10, "u1", "User One", operating_system="Ubuntu")

    def test_other_deploy_failure_is_clone_error(self, hypervisor, mock_client):
        mock_client.deploy.side_effect = VCenterAPIError("busy", status_code=500)

        with pytest.raises(CloneError):
            hypervisor.create("web1", 1024, 1, 10, "u1", "User One", operating_system="Ubuntu")


class TestDestroy:
    def test_powered_on_vm_is_stopped_first(self, hypervisor, mock_client):
        mock_client.get_vm.return_value = {"power_state": "POWERED_ON"}

        hypervisor.destroy("vm-301", "u1")

        mock_client.power.assert_called_once_with("vm-301", "stop")
        mock_client.delete_vm.assert_called_once_with("vm-301")

    def test_missing_vm_raises_not_found(self, hypervisor, mock_client):
        mock_client.get_vm.side_effect = VCenterAPIError("gone", status_code=404, error_type="NOT_FOUND")

        with pytest.raises(HypervisorVmNotFoundError):
            hypervisor.destroy("vm-301", "u1")


class TestVCenterClient:
    def _response(self, status_code=200, payload=None):
        response = MagicMock(status_code=status_code, content=b"{}", text="")
        response.json.return_value = payload
        return response

    def test_valid_cached_session_is_reused(self, vcenter_settings):
        """캐시된 세션이 유효하면 새 세션을 만들지 않는지 테스트합니다."""
        session = MagicMock(spec=requests.Session)
        session.get.return_value = self._response()
        cache = TimedCache()
        cache.set(SESSION_CACHE_KEY, "sess-1")
        client = VCenterClient(vcenter_settings.vcenter, cache, session=session)

        assert client.session_id() == "sess-1"
        session.post.assert_not_called()

    def test_expired_session_is_recreated(self, vcenter_settings):
        session = MagicMock(spec=requests.Session)
        session.get.return_value = self._response(status_code=401)
        session.post.return_value = self._response(status_code=201, payload="sess-2")
        cache = TimedCache()
        cache.set(SESSION_CACHE_KEY, "sess-1")
        client = VCenterClient(vcenter_settings.vcenter, cache, session=session)

        assert client.session_id() == "sess-2"
        assert session.post.call_args.kwargs["auth"] == ("api", "secret")

    def test_datastore_id_is_cached(self, vcenter_settings):
        session = MagicMock(spec=requests.Session)
        session.post.return_value = self._response(status_code=201, payload="sess-1")
        session.get.return_value = self._response()
        session.request.return_value = self._response(payload=[{"datastore": "datastore-11", "name": "ds1"}])
        client = VCenterClient(vcenter_settings.vcenter, TimedCache(), session=session)

        assert client.datastore_id() == "datastore-11"
        assert client.datastore_id() == "datastore-11"
        assert session.request.call_count == 1
