# tests/repositories/test_sqlalchemy_repositories.py
import pytest

from selfservice.database import models
from selfservice.database.models import IPState, VmState
from selfservice.repositories.sqlalchemy import (
    SqlalchemyDnsRecordRepository,
    SqlalchemyIPAddressRepository,
    SqlalchemyVMRepository,
)
from selfservice.services.exceptions import DuplicateRecordError, VmAlreadyExistsError


def new_vm(name="web1", owner_sid="u1"):
    return models.VirtualMachine(
        hypervisor="proxmox", owner_sid=owner_sid, owner_name="User One", name=name,
        memory_mb=1024, cpu_cores=1, disk_gb=20, state=VmState.PENDING,
    )


def new_record(vm_id, subdomain, value="10.0.0.10", record_type="A"):
    return models.DnsRecord(zone="example.com", subdomain=subdomain, record_type=record_type,
                            record_value=value, ttl=3600, virtual_machine_id=vm_id)


class TestVMRepository:
    def test_same_name_for_same_owner_is_rejected(self, db_session):
        repo = SqlalchemyVMRepository(db_session)
        repo.create(new_vm())

        with pytest.raises(VmAlreadyExistsError):
            repo.create(new_vm())

        # 다른 소유자는 같은 이름을 쓸 수 있음
        repo.create(new_vm(owner_sid="u2"))
        assert repo.count_by_owner("u1") == 1

    def test_transition_state_only_from_expected_states(self, db_session):
        """현재 상태가 허용 목록에 없으면 상태가 바뀌지 않는지 테스트합니다."""
        # === Arrange ===
        repo = SqlalchemyVMRepository(db_session)
        vm = repo.create(new_vm())

        # === Act & Assert ===
        assert repo.transition_state(vm, [VmState.PENDING], VmState.ACTIVE) is True
        assert repo.transition_state(vm, [VmState.PENDING], VmState.ACTIVE) is False
        assert repo.transition_state(vm, [VmState.PENDING, VmState.ACTIVE], VmState.DELETING) is True
        assert repo.transition_state(vm, [VmState.PENDING, VmState.ACTIVE], VmState.DELETING) is False
        assert vm.state == VmState.DELETING

    def test_delete_cascades_dns_records(self, db_session):
        vm_repo = SqlalchemyVMRepository(db_session)
        record_repo = SqlalchemyDnsRecordRepository(db_session)
        vm = vm_repo.create(new_vm())
        vm_id = vm.id
        record_repo.create(new_record(vm_id, "web1"))
        db_session.refresh(vm)

        vm_repo.delete(vm)

        assert record_repo.list_by_vm_id(vm_id) == []


class TestIPAddressRepository:
    def test_claimed_address_cannot_be_claimed_again(self, db_session):
        repo = SqlalchemyIPAddressRepository(db_session)
        repo.add("10.0.0.10")

        assert repo.mark_claimed("10.0.0.10", "token-a") is True
        assert repo.mark_claimed("10.0.0.10", "token-b") is False
        assert repo.mark_assigned("10.0.0.10", "token-b", 1) is False
        assert repo.find_by_address("10.0.0.10").claim_token == "token-a"

    def test_add_duplicate_returns_false(self, db_session):
        repo = SqlalchemyIPAddressRepository(db_session)

        assert repo.add("10.0.0.10") is True
        assert repo.add("10.0.0.10") is False
        assert repo.count_by_state(IPState.FREE) == 1


class TestDnsRecordRepository:
    def test_owner_lookup_covers_nested_subdomains(self, db_session):
        """최상위 서브도메인과 그 하위 레코드의 소유 VM을 모두 찾는지 테스트합니다."""
        # === Arrange ===
        vm_repo = SqlalchemyVMRepository(db_session)
        first = vm_repo.create(new_vm("vm-a"))
        second = vm_repo.create(new_vm("vm-b"))
        repo = SqlalchemyDnsRecordRepository(db_session)
        repo.create(new_record(first.id, "app.web1"))
        repo.create(new_record(second.id, "api.app.web1", "10.0.0.11"))
        repo.create(new_record(second.id, "app.web10", "10.0.0.12"))

        # === Act ===
        owners = repo.list_owner_vm_ids("example.com", "app.web1")

        # === Assert ===
        assert sorted(owners) == sorted([first.id, second.id])
        assert repo.list_owner_vm_ids("example.com", "other") == []

    def test_duplicate_tuple_is_rejected(self, db_session):
        vm = SqlalchemyVMRepository(db_session).create(new_vm())
        repo = SqlalchemyDnsRecordRepository(db_session)
        repo.create(new_record(vm.id, "web1"))

        with pytest.raises(DuplicateRecordError):
            repo.create(new_record(vm.id, "web1"))

    def test_delete_missing_record_returns_zero(self, db_session):
        repo = SqlalchemyDnsRecordRepository(db_session)

        assert repo.delete("example.com", "web1", "A", "10.0.0.10") == 0
