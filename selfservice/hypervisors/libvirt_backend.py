# selfservice/hypervisors/libvirt_backend.py
import logging
import os
import uuid
from typing import List, Sequence

import libvirt

from selfservice.config import Settings
from selfservice.hypervisors.base import (
    IHypervisor,
    ProvisionedVM,
    VMSnapshot,
    clamp_resources,
    snapshot_from_ledger,
)
from selfservice.services.image_service import ImageService
from selfservice.utils.vm_xml_generator import generate_vm_xml
from selfservice.services.exceptions import (
    CloneError,
    HypervisorAuthError,
    HypervisorError,
    HypervisorVmNotFoundError,
    ProvisioningError,
)

logger = logging.getLogger(__name__)

STATE_NAMES = {
    libvirt.VIR_DOMAIN_NOSTATE: 'NOSTATE',
    libvirt.VIR_DOMAIN_RUNNING: 'RUNNING',
    libvirt.VIR_DOMAIN_BLOCKED: 'BLOCKED',
    libvirt.VIR_DOMAIN_PAUSED: 'PAUSED',
    libvirt.VIR_DOMAIN_SHUTDOWN: 'SHUTDOWN',
    libvirt.VIR_DOMAIN_SHUTOFF: 'SHUTOFF',
    libvirt.VIR_DOMAIN_CRASHED: 'CRASHED',
    libvirt.VIR_DOMAIN_PMSUSPENDED: 'PMSUSPENDED',
}


class LibvirtHypervisor(IHypervisor):
    """
    로컬 libvirt/KVM 호스트에 VM을 만드는 백엔드입니다.

    기반 이미지를 backing file로 하는 CoW 디스크를 만들고, 템플릿 XML로
    도메인을 정의한 뒤 시작합니다. VM ID는 도메인 UUID입니다.
    """
    name = "libvirt"

    def __init__(self, settings: Settings, image_service: ImageService, conn=None):
        self.settings = settings
        self.image_service = image_service
        if conn is not None:
            self.conn = conn
            return
        try:
            self.conn = libvirt.open(settings.libvirt.uri)
        except libvirt.libvirtError as e:
            raise HypervisorAuthError(f"Failed to open connection to the hypervisor at {settings.libvirt.uri}.") from e

    def create(self, name, memory_mb, cpu_cores, disk_gb, owner_sid, owner_name,
               description="", operating_system="", subdomain=None) -> ProvisionedVM:
        """
        새로운 가상 머신을 생성하고 시작합니다.

        디스크 생성, (필요 시) 디스크 확장, libvirt VM 정의, VM 시작을 수행합니다.
        실패 시 이 메서드 안에서 만든 도메인과 디스크를 정리한 뒤 예외를 다시 던지므로,
        호출자가 보상할 VM은 남지 않습니다.

        Raises:
            TemplateFetchError: 기반 이미지를 찾거나 읽을 수 없을 때.
            CloneError: 디스크 생성이나 도메인 정의/시작에 실패했을 때.
            DiskResizeError: 디스크 확장에 실패했을 때.
        """
        limits = self.settings.libvirt
        memory_mb, cpu_cores, disk_gb = clamp_resources(self.settings.limits, memory_mb, cpu_cores, disk_gb)
        memory_mb = max(memory_mb, limits.base_memory_mb)
        cpu_cores = max(cpu_cores, limits.base_cpu_cores)

        source_filepath = self.image_service.validate_base_image()
        base_disk_gb = self.image_service.virtual_size_gb(source_filepath)

        vm_uuid = str(uuid.uuid4())
        domain_name = f"{name}-{vm_uuid[:8]}"
        vm_disk_filepath = None
        domain = None

        try:
            # 1. VM 디스크 생성 및 확장
            vm_disk_filepath = self.image_service.create_vm_disk(vm_uuid, source_filepath)
            if disk_gb > base_disk_gb:
                self.image_service.resize_disk(vm_disk_filepath, disk_gb)

            # 2. VM XML 설정 생성 및 Libvirt VM 정의
            xml_config = generate_vm_xml(
                domain_name, vm_uuid, cpu_cores, memory_mb, vm_disk_filepath,
                description=f"owner: {owner_name} ({owner_sid}) {description or ''}".strip(),
            )
            domain = self.conn.defineXML(xml_config)

            # 3. VM 시작
            if domain.create() < 0:
                raise CloneError(f"Failed to start VM '{domain_name}' after definition.")

        except libvirt.libvirtError as e:
            logger.error("VM '%s' creation failed: %s. Starting rollback...", domain_name, e)
            self._rollback_vm_creation(domain, vm_disk_filepath)
            raise CloneError(f"Failed to create VM '{domain_name}'. Original error: {e}") from e
        except ProvisioningError:
            logger.error("VM '%s' creation failed. Starting rollback...", domain_name)
            self._rollback_vm_creation(domain, vm_disk_filepath)
            raise

        logger.info("Started VM %s (%s) for %s", domain_name, vm_uuid, owner_sid)
        return ProvisionedVM(
            vmid=vm_uuid,
            name=name,
            memory_mb=memory_mb,
            cpu_cores=cpu_cores,
            disk_gb=max(disk_gb, base_disk_gb),
        )

    def _rollback_vm_creation(self, domain, disk_path):
        if domain:
            try:
                if domain.isActive():
                    domain.destroy()
                domain.undefine()
            except libvirt.libvirtError as e:
                logger.warning("Rollback: failed to clean up libvirt domain: %s", e)

        if disk_path and os.path.exists(disk_path):
            self.image_service.delete_vm_disk(disk_path)

    def _lookup(self, vmid: str):
        try:
            return self.conn.lookupByUUIDString(vmid)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise HypervisorVmNotFoundError(f"VM {vmid} does not exist on libvirt.", vmid=vmid) from e
            raise HypervisorError(f"Failed to look up VM {vmid}: {e}", vmid=vmid) from e

    def destroy(self, vmid: str, owner_sid: str) -> None:
        """도메인을 강제 종료하고 정의를 해제한 뒤 디스크 파일을 삭제합니다."""
        domain = self._lookup(vmid)
        try:
            if domain.isActive():
                domain.destroy()
            domain.undefine()
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to remove VM {vmid}: {e}", vmid=vmid) from e

        self.image_service.delete_vm_disk(self.image_service.disk_path(vmid))
        logger.info("Deleted VM %s owned by %s", vmid, owner_sid)

    def list_all(self) -> List[VMSnapshot]:
        try:
            domains = self.conn.listAllDomains(0)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Error fetching domains from libvirt: {e}") from e

        snapshots = []
        for domain in domains:
            state_code, max_mem_kib, _, vcpus, _ = domain.info()
            snapshots.append(VMSnapshot(
                vmid=domain.UUIDString(),
                name=domain.name(),
                status=STATE_NAMES.get(state_code, 'UNKNOWN'),
                memory_mb=max_mem_kib // 1024,
                cpu_cores=vcpus,
            ))
        return snapshots

    def list_for_owner(self, vms: Sequence, owner_sid: str) -> List[VMSnapshot]:
        snapshots = []
        for vm in vms:
            if not vm.vmid:
                logger.warning("VM %s of %s has no hypervisor id yet, skipping", vm.id, owner_sid)
                continue
            try:
                state_code = self.conn.lookupByUUIDString(vm.vmid).info()[0]
            except libvirt.libvirtError as e:
                logger.warning("Skipping VM %s of %s: %s", vm.vmid, owner_sid, e)
                continue
            snapshots.append(snapshot_from_ledger(vm, STATE_NAMES.get(state_code, 'UNKNOWN')))
        return snapshots
