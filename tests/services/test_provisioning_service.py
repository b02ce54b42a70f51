# tests/services/test_provisioning_service.py
import dataclasses
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from selfservice.config import DnsSettings
from selfservice.database import models
from selfservice.database.models import IPState, VmState
from selfservice.hypervisors.base import IHypervisor, ProvisionedVM, snapshot_from_ledger
from selfservice.repositories.sqlalchemy import (
    SqlalchemyIPAddressRepository,
    SqlalchemyVMRepository,
)
from selfservice.services.dns_service import DnsService
from selfservice.services.firewall_service import FirewallService
from selfservice.services.ip_pool_service import IPPoolService
from selfservice.services.provisioning_service import (
    ProvisioningAttempt,
    ProvisioningService,
    VmCreateRequest,
)
from selfservice.services.exceptions import (
    CloneError,
    DiskResizeError,
    DnsControllerError,
    FirewallError,
    HypervisorAuthError,
    HypervisorError,
    HypervisorVmNotFoundError,
    IPPoolExhaustedError,
    TeardownIncompleteError,
    ValidationError,
    VmAlreadyExistsError,
    VmNotFoundError,
    VmQuotaExceededError,
    VmStateConflictError,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


# ===================================================================
#  테스트를 위한 Fixture 설정
#  원장과 IP 풀은 실제 SQLite를, 외부 시스템은 모의 객체를 사용합니다.
# ===================================================================

@pytest.fixture
def vm_repo(db_session) -> SqlalchemyVMRepository:
    return SqlalchemyVMRepository(db_session)


@pytest.fixture
def ip_repo(db_session) -> SqlalchemyIPAddressRepository:
    return SqlalchemyIPAddressRepository(db_session)


@pytest.fixture
def ip_pool(ip_repo) -> IPPoolService:
    pool = IPPoolService(ip_repo)
    pool.seed_range("10.0.0.10", "10.0.0.12")
    return pool


@pytest.fixture
def mock_hypervisor() -> MagicMock:
    """IHypervisor 모의 객체. 항상 vmid 101인 VM을 만든다고 응답합니다."""
    hypervisor = MagicMock(spec=IHypervisor)
    hypervisor.name = "proxmox"
    hypervisor.create.return_value = ProvisionedVM("101", "web1", 1024, 2, 20)
    hypervisor.list_for_owner.side_effect = lambda vms, owner_sid: [
        snapshot_from_ledger(vm, "running") for vm in vms
    ]
    return hypervisor


@pytest.fixture
def mock_firewall() -> MagicMock:
    return MagicMock(spec=FirewallService)


@pytest.fixture
def service(settings, vm_repo, ip_pool, mock_hypervisor, mock_firewall) -> ProvisioningService:
    return ProvisioningService(settings, vm_repo, ip_pool, mock_hypervisor, mock_firewall, clock=lambda: NOW)


def web1_request(**overrides) -> VmCreateRequest:
    values = dict(name="web1", memory_mb=1024, cpu_cores=2, disk_gb=20,
                  operating_system="Ubuntu", subdomain="web1")
    values.update(overrides)
    return VmCreateRequest(**values)


# ===================================================================
#  ProvisioningAttempt 테스트
# ===================================================================
class TestProvisioningAttempt:
    def test_compensations_run_in_reverse_and_continue_after_failure(self):
        """보상 작업이 역순으로 실행되고, 하나가 실패해도 나머지가 실행되는지 테스트합니다."""
        # === Arrange ===
        calls = []
        attempt = ProvisioningAttempt("test")
        attempt.record("first", lambda: calls.append("first"))

        def broken():
            calls.append("second")
            raise RuntimeError("boom")
        attempt.record("second", broken)
        attempt.record("third", lambda: calls.append("third"))

        # === Act ===
        failed = attempt.compensate()

        # === Assert ===
        assert calls == ["third", "second", "first"]
        assert failed == ["second"]


# ===================================================================
#  create_vm 테스트
# ===================================================================
class TestCreateVm:
    def test_create_and_delete_end_to_end(self, service, ip_repo, vm_repo, mock_hypervisor, mock_firewall):
        """생성하면 active 상태로 IP와 방화벽이 연결되고, 삭제하면 모두 정리되는지 테스트합니다."""
        # === Act (생성) ===
        vm = service.create_vm("u1", "User One", web1_request())
        vm_id = vm.id

        # === Assert (생성) ===
        assert vm.state == VmState.ACTIVE
        assert vm.vmid == "101"
        assert vm.expires_at == NOW + timedelta(days=168)
        assert ip_repo.find_by_vm_id(vm_id).address == "10.0.0.10"
        mock_hypervisor.bind_address.assert_called_once_with("101", "10.0.0.10")
        mock_firewall.open_access.assert_called_once_with("10.0.0.10", "u1", "web1", [])
        snapshots = service.list_vms("u1")
        assert [s.address for s in snapshots] == ["10.0.0.10"]

        # === Act (삭제) ===
        service.delete_vm("u1", vm_id)

        # === Assert (삭제) ===
        mock_firewall.close_access.assert_called_once_with("u1", "web1")
        mock_hypervisor.destroy.assert_called_once_with("101", "u1")
        assert ip_repo.count_by_state(IPState.FREE) == 3
        assert vm_repo.find_by_id(vm_id) is None
        assert service.list_vms("u1") == []

    def test_firewall_failure_rolls_back_everything(self, service, ip_repo, vm_repo, mock_hypervisor, mock_firewall):
        """
        방화벽 단계에서 실패하면 원장 레코드가 지워지고, IP가 free로 돌아가고,
        하이퍼바이저 VM이 삭제되며, 원래 예외가 그대로 전달되는지 테스트합니다.
        """
        # === Arrange ===
        mock_firewall.open_access.side_effect = FirewallError("rule rejected")

        # === Act & Assert ===
        with pytest.raises(FirewallError, match="rule rejected"):
            service.create_vm("u1", "User One", web1_request())

        assert vm_repo.count_by_owner("u1") == 0
        assert ip_repo.count_by_state(IPState.FREE) == 3
        mock_hypervisor.destroy.assert_called_once_with("101", "u1")
        mock_firewall.close_access.assert_not_called()

    def test_compensation_failure_keeps_original_error(self, service, vm_repo, mock_hypervisor, mock_firewall):
        """보상 작업이 실패해도 원래 예외가 보고되고 나머지 보상은 계속되는지 테스트합니다."""
        mock_firewall.open_access.side_effect = FirewallError("rule rejected")
        mock_hypervisor.destroy.side_effect = HypervisorError("hypervisor unreachable")

        with pytest.raises(FirewallError):
            service.create_vm("u1", "User One", web1_request())

        assert vm_repo.count_by_owner("u1") == 0

    def test_partially_created_vm_is_destroyed(self, service, vm_repo, mock_hypervisor):
        """하이퍼바이저가 VM을 만든 뒤 실패하면 예외에 담긴 vmid로 VM을 지우는지 테스트합니다."""
        mock_hypervisor.create.side_effect = DiskResizeError("resize failed", vmid="102")

        with pytest.raises(DiskResizeError):
            service.create_vm("u1", "User One", web1_request())

        mock_hypervisor.destroy.assert_called_once_with("102", "u1")
        assert vm_repo.count_by_owner("u1") == 0

    def test_auth_failure_after_clone_destroys_vm(self, service, vm_repo, mock_hypervisor):
        mock_hypervisor.create.side_effect = HypervisorAuthError("Proxmox ticket was rejected", vmid="103")

        with pytest.raises(HypervisorAuthError):
            service.create_vm("u1", "User One", web1_request())

        mock_hypervisor.destroy.assert_called_once_with("103", "u1")
        assert vm_repo.count_by_owner("u1") == 0

    def test_clone_failure_without_vmid_destroys_nothing(self, service, vm_repo, mock_hypervisor):
        mock_hypervisor.create.side_effect = CloneError("clone failed")

        with pytest.raises(CloneError):
            service.create_vm("u1", "User One", web1_request())

        mock_hypervisor.destroy.assert_not_called()
        assert vm_repo.count_by_owner("u1") == 0

    def test_pool_exhaustion_destroys_created_vm(self, settings, vm_repo, ip_repo, mock_hypervisor, mock_firewall):
        # 주소를 하나도 넣지 않은 풀
        service = ProvisioningService(settings, vm_repo, IPPoolService(ip_repo), mock_hypervisor, mock_firewall,
                                      clock=lambda: NOW)

        with pytest.raises(IPPoolExhaustedError):
            service.create_vm("u1", "User One", web1_request())

        mock_hypervisor.destroy.assert_called_once_with("101", "u1")
        assert vm_repo.count_by_owner("u1") == 0

    def test_dns_record_is_published_with_domain_suffix(self, settings, vm_repo, ip_pool, mock_hypervisor,
                                                        mock_firewall):
        """DNS 영역이 설정되어 있으면 서브도메인에 A 레코드를 만드는지 테스트합니다."""
        # === Arrange ===
        settings = dataclasses.replace(settings, dns=DnsSettings(zone="example.com", domain_suffix="students"))
        mock_dns = MagicMock(spec=DnsService)
        service = ProvisioningService(settings, vm_repo, ip_pool, mock_hypervisor, mock_firewall, mock_dns,
                                      clock=lambda: NOW)

        # === Act ===
        vm = service.create_vm("u1", "User One", web1_request())

        # === Assert ===
        mock_dns.create_record.assert_called_once_with(
            "example.com", "web1.students", "A", "10.0.0.10", None, vm.id
        )

    def test_dns_failure_closes_firewall(self, settings, vm_repo, ip_pool, ip_repo, mock_hypervisor, mock_firewall):
        settings = dataclasses.replace(settings, dns=DnsSettings(zone="example.com"))
        mock_dns = MagicMock(spec=DnsService)
        mock_dns.create_record.side_effect = DnsControllerError("dns down")
        service = ProvisioningService(settings, vm_repo, ip_pool, mock_hypervisor, mock_firewall, mock_dns,
                                      clock=lambda: NOW)

        with pytest.raises(DnsControllerError):
            service.create_vm("u1", "User One", web1_request())

        mock_firewall.close_access.assert_called_once_with("u1", "web1")
        assert ip_repo.count_by_state(IPState.FREE) == 3


# ===================================================================
#  요청 검증 테스트
# ===================================================================
class TestValidation:
    def test_third_vm_exceeds_quota(self, service, mock_hypervisor):
        service.create_vm("u1", "User One", web1_request(name="vm-one"))
        service.create_vm("u1", "User One", web1_request(name="vm-two"))
        mock_hypervisor.create.reset_mock()

        with pytest.raises(VmQuotaExceededError):
            service.create_vm("u1", "User One", web1_request(name="vm-three"))

        mock_hypervisor.create.assert_not_called()

    def test_duplicate_name_is_rejected(self, service):
        service.create_vm("u1", "User One", web1_request())

        with pytest.raises(VmAlreadyExistsError):
            service.create_vm("u1", "User One", web1_request())

    @pytest.mark.parametrize("overrides", [
        {"memory_mb": 256},
        {"cpu_cores": 0},
        {"disk_gb": 5},
        {"memory_mb": "lots"},
        {"operating_system": ""},
        {"name": "a b"},
        {"subdomain": "bad.sub"},
    ])
    def test_invalid_requests_are_rejected_before_anything_is_created(self, service, vm_repo, mock_hypervisor,
                                                                      overrides):
        with pytest.raises(ValidationError):
            service.create_vm("u1", "User One", web1_request(**overrides))

        mock_hypervisor.create.assert_not_called()
        assert vm_repo.count_by_owner("u1") == 0

    def test_expiry_in_the_past_is_rejected(self, service, mock_hypervisor):
        with pytest.raises(ValidationError):
            service.create_vm("u1", "User One", web1_request(expires_at=NOW - timedelta(days=1)))

        mock_hypervisor.create.assert_not_called()

    def test_oversized_request_is_clamped(self, service, settings, mock_hypervisor):
        """상한을 넘는 리소스는 거부하지 않고 상한으로 맞추는지 테스트합니다."""
        vm = service.create_vm("u1", "User One", web1_request(memory_mb=999999, cpu_cores=64, disk_gb=9000))

        limits = settings.limits
        args = mock_hypervisor.create.call_args.args
        assert args[1:4] == (limits.max_memory_mb, limits.max_cpu_cores, limits.max_disk_gb)
        assert vm.memory_mb == limits.max_memory_mb


# ===================================================================
#  delete_vm 테스트
# ===================================================================
class TestDeleteVm:
    def test_other_owners_vm_is_not_found(self, service):
        vm = service.create_vm("u1", "User One", web1_request())

        with pytest.raises(VmNotFoundError):
            service.delete_vm("u2", vm.id)

    def test_admin_can_delete_any_vm(self, service, vm_repo):
        vm = service.create_vm("u1", "User One", web1_request())
        vm_id = vm.id

        service.delete_vm("admin", vm_id, is_admin=True)

        assert vm_repo.find_by_id(vm_id) is None

    def test_vm_already_being_deleted_conflicts(self, service, vm_repo, mock_firewall):
        vm = service.create_vm("u1", "User One", web1_request())
        vm_repo.transition_state(vm, [VmState.ACTIVE], VmState.DELETING)

        with pytest.raises(VmStateConflictError):
            service.delete_vm("u1", vm.id)

        mock_firewall.close_access.assert_not_called()

    def test_vm_missing_on_hypervisor_still_deletes(self, service, vm_repo, mock_hypervisor):
        vm = service.create_vm("u1", "User One", web1_request())
        vm_id = vm.id
        mock_hypervisor.destroy.side_effect = HypervisorVmNotFoundError("gone")

        service.delete_vm("u1", vm_id)

        assert vm_repo.find_by_id(vm_id) is None

    def test_firewall_failure_is_reported_after_full_teardown(self, service, vm_repo, ip_repo,
                                                              mock_hypervisor, mock_firewall):
        """방화벽 정리에 실패해도 원장, IP, 하이퍼바이저 정리는 진행되고 마지막에 알리는지 테스트합니다."""
        # === Arrange ===
        vm = service.create_vm("u1", "User One", web1_request())
        vm_id = vm.id
        mock_firewall.close_access.side_effect = FirewallError("firewall unreachable")

        # === Act ===
        with pytest.raises(TeardownIncompleteError) as exc_info:
            service.delete_vm("u1", vm_id)

        # === Assert ===
        assert exc_info.value.failed_steps == ["firewall"]
        assert vm_repo.find_by_id(vm_id) is None
        assert ip_repo.count_by_state(IPState.FREE) == 3
        mock_hypervisor.destroy.assert_called_once_with("101", "u1")

    def test_vm_of_other_hypervisor_is_not_found(self, service, vm_repo):
        vm = vm_repo.create(models.VirtualMachine(
            hypervisor="vcenter", owner_sid="u1", name="web1", memory_mb=1024,
            cpu_cores=1, disk_gb=20, state=VmState.ACTIVE,
        ))

        with pytest.raises(VmNotFoundError):
            service.delete_vm("u1", vm.id)
