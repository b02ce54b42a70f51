import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from selfservice.config import Settings
from selfservice.database import models
from selfservice.database.models import VmState
from selfservice.hypervisors.base import IHypervisor, VMSnapshot
from selfservice.repositories.interfaces import IVMRepository
from selfservice.services.dns_service import DnsService
from selfservice.services.firewall_service import FirewallService
from selfservice.services.ip_pool_service import IPPoolService
from selfservice.services.exceptions import (
    HypervisorVmNotFoundError,
    IPNotFoundError,
    ProvisioningError,
    TeardownIncompleteError,
    ValidationError,
    VmAlreadyExistsError,
    VmNotFoundError,
    VmQuotaExceededError,
    VmStateConflictError,
)

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9-]{3,63}$")
SUBDOMAIN_LABEL_PATTERN = re.compile(r"^[a-z0-9-]{1,63}$")


def utcnow() -> datetime:
    # 원장은 timezone 없는 UTC로 저장
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class VmCreateRequest:
    name: str
    memory_mb: int
    cpu_cores: int
    disk_gb: int
    operating_system: str
    description: str = ""
    expires_at: Optional[datetime] = None
    subdomain: Optional[str] = None
    home_ips: List[str] = field(default_factory=list)


class ProvisioningAttempt:
    """
    한 번의 생성 요청에서 완료된 단계와 그 보상 작업을 순서대로 기록합니다.

    실패 시 compensate()가 기록의 역순으로 보상 작업을 실행합니다.
    보상 작업 하나가 실패해도 나머지는 계속 실행되며, 실패는 로그로만 남깁니다.
    """

    def __init__(self, label: str):
        self.label = label
        self.steps: List[Tuple[str, Callable[[], object]]] = []

    def record(self, step: str, compensation: Callable[[], object]) -> None:
        self.steps.append((step, compensation))

    def compensate(self) -> List[str]:
        failed = []
        for step, compensation in reversed(self.steps):
            try:
                compensation()
                logger.info("Compensated step '%s' of %s", step, self.label)
            except Exception:
                logger.exception("Compensation of step '%s' for %s failed, manual cleanup required", step, self.label)
                failed.append(step)
        self.steps = []
        return failed


class ProvisioningService:
    """
    VM 생성/삭제 사가(saga)를 조율합니다.

    생성: 검증 -> 원장 예약(pending) -> 하이퍼바이저 생성 -> IP claim/assign
    -> IP 바인딩 -> 방화벽 개방 -> (선택) DNS A 레코드 -> active.
    어느 단계에서든 실패하면 완료된 단계를 역순으로 보상하고 원래 예외를 그대로 던집니다.
    """

    def __init__(self, settings: Settings, vm_repo: IVMRepository, ip_pool: IPPoolService,
                 hypervisor: IHypervisor, firewall: FirewallService, dns: Optional[DnsService] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings
        self.vm_repo = vm_repo
        self.ip_pool = ip_pool
        self.hypervisor = hypervisor
        self.firewall = firewall
        self.dns = dns
        self.clock = clock or utcnow

    # ------------------------------------------------------------------
    # 검증
    # ------------------------------------------------------------------
    @staticmethod
    def _require_int(value, field_name: str) -> int:
        if isinstance(value, bool):
            raise ValidationError(f"'{field_name}' must be an integer.", field=field_name)
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"'{field_name}' must be an integer.", field=field_name)

    def _validate(self, owner_sid: str, request: VmCreateRequest) -> VmCreateRequest:
        """
        요청을 검증하고 상한을 넘는 리소스를 잘라낸 새 요청을 반환합니다.

        너무 작거나 빠진 값만 거부하고, 너무 큰 값은 조용히 상한으로 맞춥니다.

        Raises:
            ValidationError: 필수 값 누락, 형식 오류, 하한 미달, 지난 만료일.
            VmQuotaExceededError: 소유자가 이미 최대 개수의 VM을 가지고 있을 때.
            VmAlreadyExistsError: 같은 이름의 VM이 이미 있을 때.
        """
        limits = self.settings.limits
        if not owner_sid:
            raise ValidationError("Owner is required.", field="owner")
        if not request.name or not NAME_PATTERN.match(request.name):
            raise ValidationError(
                "Name must be 3-63 characters of letters, digits and hyphens.", field="name"
            )
        if not request.operating_system:
            raise ValidationError("Operating system is required.", field="operating_system")

        memory_mb = self._require_int(request.memory_mb, "memory_mb")
        cpu_cores = self._require_int(request.cpu_cores, "cpu_cores")
        disk_gb = self._require_int(request.disk_gb, "disk_gb")
        if memory_mb < limits.min_memory_mb:
            raise ValidationError(f"Memory must be at least {limits.min_memory_mb} MB.", field="memory_mb")
        if cpu_cores < limits.min_cpu_cores:
            raise ValidationError(f"At least {limits.min_cpu_cores} CPU core is required.", field="cpu_cores")
        if disk_gb < limits.min_disk_gb:
            raise ValidationError(f"Disk must be at least {limits.min_disk_gb} GB.", field="disk_gb")

        subdomain = (request.subdomain or "").strip().lower() or None
        if subdomain and not SUBDOMAIN_LABEL_PATTERN.match(subdomain):
            raise ValidationError("Subdomain may only contain lowercase letters, digits and hyphens.",
                                  field="subdomain")

        now = self.clock()
        expires_at = request.expires_at or now + timedelta(days=self.settings.default_lifetime_days)
        if expires_at <= now:
            raise ValidationError("Expiry date must be in the future.", field="expires_at")

        if self.vm_repo.count_by_owner(owner_sid) >= limits.max_vms_per_owner:
            raise VmQuotaExceededError(
                f"You already have the maximum of {limits.max_vms_per_owner} VMs.", field="owner"
            )
        if self.vm_repo.find_by_name_and_owner(request.name, owner_sid):
            raise VmAlreadyExistsError(f"VM name '{request.name}' already exists.", field="name")

        return VmCreateRequest(
            name=request.name,
            memory_mb=min(memory_mb, limits.max_memory_mb),
            cpu_cores=min(cpu_cores, limits.max_cpu_cores),
            disk_gb=min(disk_gb, limits.max_disk_gb),
            operating_system=request.operating_system,
            description=request.description or "",
            expires_at=expires_at,
            subdomain=subdomain,
            home_ips=list(request.home_ips or []),
        )

    # ------------------------------------------------------------------
    # 생성
    # ------------------------------------------------------------------
    def create_vm(self, owner_sid: str, owner_name: str, request: VmCreateRequest) -> models.VirtualMachine:
        """
        VM을 만들고 IP, 방화벽, (선택) DNS 레코드까지 연결합니다.

        Returns:
            active 상태가 된 원장 레코드.

        Raises:
            ValidationError: 검증 실패 (아무것도 만들지 않음).
            StateConflictError: 다른 요청과 충돌했을 때.
            IPPoolExhaustedError: 남은 IP가 없을 때.
            ExternalUnavailableError: 외부 시스템 실패 (완료된 단계는 보상됨).
        """
        request = self._validate(owner_sid, request)
        attempt = ProvisioningAttempt(f"VM '{request.name}' of {owner_sid}")

        try:
            # 2. 원장 예약
            vm = self.vm_repo.create(models.VirtualMachine(
                hypervisor=self.hypervisor.name,
                owner_sid=owner_sid,
                owner_name=owner_name,
                name=request.name,
                description=request.description,
                operating_system=request.operating_system,
                expires_at=request.expires_at,
                memory_mb=request.memory_mb,
                cpu_cores=request.cpu_cores,
                disk_gb=request.disk_gb,
                subdomain=request.subdomain,
                state=VmState.PENDING,
            ))
            attempt.record("ledger", lambda: self.vm_repo.delete(vm))
            logger.info("Reserved ledger row %s for %s", vm.id, attempt.label)

            # 3. 하이퍼바이저
            try:
                provisioned = self.hypervisor.create(
                    request.name, request.memory_mb, request.cpu_cores, request.disk_gb,
                    owner_sid, owner_name,
                    description=request.description,
                    operating_system=request.operating_system,
                    subdomain=request.subdomain,
                )
            except ProvisioningError as e:
                orphan_vmid = getattr(e, "vmid", None)
                if orphan_vmid:
                    attempt.record("hypervisor", lambda: self.hypervisor.destroy(orphan_vmid, owner_sid))
                raise
            vmid = provisioned.vmid
            attempt.record("hypervisor", lambda: self.hypervisor.destroy(vmid, owner_sid))
            logger.info("Hypervisor created VM %s for %s", vmid, attempt.label)

            # 4. IP
            allocation = self.ip_pool.claim()
            attempt.record("ip", lambda: self.ip_pool.release(allocation.address))
            allocation = self.ip_pool.assign(allocation, vm.id)

            # 5. 바인딩
            self.hypervisor.bind_address(vmid, allocation.address)
            self.vm_repo.bind_hypervisor(vm, vmid)

            # 6. 방화벽
            self.firewall.open_access(allocation.address, owner_sid, request.name, request.home_ips)
            attempt.record("firewall", lambda: self.firewall.close_access(owner_sid, request.name))

            # 6b. DNS
            if request.subdomain and self.dns and self.settings.dns.zone:
                zone = self.settings.dns.zone
                suffix = self.settings.dns.domain_suffix
                record_name = f"{request.subdomain}.{suffix}" if suffix else request.subdomain
                self.dns.create_record(zone, record_name, "A", allocation.address, None, vm.id)
                attempt.record("dns", lambda: self.dns.delete_record(zone, record_name, "A", allocation.address))

            # 7. 완료
            if not self.vm_repo.transition_state(vm, [VmState.PENDING], VmState.ACTIVE):
                raise VmStateConflictError(f"VM {vm.id} left the pending state during provisioning.")
        except Exception:
            logger.error("Provisioning of %s failed, compensating %d step(s)", attempt.label, len(attempt.steps))
            attempt.compensate()
            raise

        logger.info("VM %s (%s) is active at %s", vm.id, vmid, allocation.address)
        return vm

    # ------------------------------------------------------------------
    # 삭제
    # ------------------------------------------------------------------
    def delete_vm(self, owner_sid: str, vm_id: int, is_admin: bool = False) -> None:
        """
        VM과 딸린 외부 자원을 모두 정리합니다.

        DNS 레코드, 방화벽, 원장, IP, 하이퍼바이저 순서로 정리합니다.
        방화벽이나 하이퍼바이저 정리에 실패해도 나머지 단계는 계속 진행하고,
        마지막에 TeardownIncompleteError로 알립니다.

        Raises:
            VmNotFoundError: 원장에 VM이 없거나 다른 사용자의 VM일 때.
            VmStateConflictError: 이미 다른 요청이 삭제 중일 때.
            TeardownIncompleteError: 일부 외부 자원 정리에 실패했을 때.
        """
        if is_admin:
            vm = self.vm_repo.find_by_id(vm_id)
        else:
            vm = self.vm_repo.find_by_id_and_owner(vm_id, owner_sid)
        if not vm or vm.hypervisor != self.hypervisor.name:
            raise VmNotFoundError(f"VM {vm_id} not found.")

        if not self.vm_repo.transition_state(vm, [VmState.PENDING, VmState.ACTIVE], VmState.DELETING):
            raise VmStateConflictError(f"VM {vm_id} is already being deleted.")

        vm_owner, vm_name, vmid = vm.owner_sid, vm.name, vm.vmid
        failures: List[Tuple[str, ProvisioningError]] = []
        logger.info("Tearing down VM %s (%s) of %s", vm_id, vmid, vm_owner)

        if self.dns:
            self.dns.delete_records_for_vm(vm_id)

        try:
            self.firewall.close_access(vm_owner, vm_name)
        except ProvisioningError as e:
            logger.exception("Closing firewall access for VM %s failed", vm_id)
            failures.append(("firewall", e))

        try:
            address = self.ip_pool.lookup(vm_id).address
        except IPNotFoundError:
            address = None

        self.vm_repo.delete(vm)
        if address:
            self.ip_pool.release(address)

        if vmid:
            try:
                self.hypervisor.destroy(vmid, vm_owner)
            except HypervisorVmNotFoundError:
                logger.info("VM %s was already gone from the hypervisor", vmid)
            except ProvisioningError as e:
                logger.exception("Destroying VM %s on the hypervisor failed", vmid)
                failures.append(("hypervisor", e))

        if failures:
            steps = [step for step, _ in failures]
            raise TeardownIncompleteError(
                f"VM {vm_id} was removed but cleanup of {', '.join(steps)} failed.", failed_steps=steps
            ) from failures[0][1]
        logger.info("VM %s deleted", vm_id)

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------
    def list_vms(self, owner_sid: str) -> List[VMSnapshot]:
        vms = [vm for vm in self.vm_repo.list_by_owner(owner_sid) if vm.hypervisor == self.hypervisor.name]
        return self.hypervisor.list_for_owner(vms, owner_sid)

    def list_all_vms(self) -> List[VMSnapshot]:
        return self.hypervisor.list_all()
