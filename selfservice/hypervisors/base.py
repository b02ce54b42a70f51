# selfservice/hypervisors/base.py
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from selfservice.config import ResourceLimits


@dataclass
class ProvisionedVM:
    """하이퍼바이저에 새로 만들어진 VM의 정보"""
    vmid: str
    name: str
    memory_mb: int
    cpu_cores: int
    disk_gb: int


@dataclass
class VMSnapshot:
    """하이퍼바이저에서 조회한 VM의 현재 상태와 원장 메타데이터를 합친 결과"""
    vmid: str
    name: str
    status: str
    memory_mb: Optional[int] = None
    cpu_cores: Optional[int] = None
    disk_gb: Optional[int] = None
    node: Optional[str] = None
    ledger_id: Optional[int] = None
    owner_name: Optional[str] = None
    description: Optional[str] = None
    operating_system: Optional[str] = None
    expires_at: Optional[datetime] = None
    address: Optional[str] = None
    subdomain: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = dict(self.__dict__)
        if self.expires_at:
            data["expires_at"] = self.expires_at.isoformat()
        return data


def clamp_resources(limits: ResourceLimits, memory_mb: int, cpu_cores: int, disk_gb: int):
    """요청 리소스를 상한으로 잘라냅니다. 하한 검사는 오케스트레이터가 먼저 수행합니다."""
    return (
        min(memory_mb, limits.max_memory_mb),
        min(cpu_cores, limits.max_cpu_cores),
        min(disk_gb, limits.max_disk_gb),
    )


class IHypervisor(ABC):
    """
    하이퍼바이저 백엔드가 구현해야 하는 인터페이스입니다.

    모든 백엔드는 템플릿의 리소스를 하한으로 보고, 요청 값이 템플릿보다
    클 때만 메모리/CPU/디스크를 늘립니다.
    """
    name = "hypervisor"

    @abstractmethod
    def list_all(self) -> List[VMSnapshot]:
        """클러스터 전체의 VM 목록을 조회합니다. 응답한 노드가 하나도 없을 때만 실패합니다."""
        pass

    @abstractmethod
    def list_for_owner(self, vms: Sequence, owner_sid: str) -> List[VMSnapshot]:
        """원장의 VM 레코드들에 하이퍼바이저의 실시간 상태를 붙여 반환합니다."""
        pass

    @abstractmethod
    def create(self, name: str, memory_mb: int, cpu_cores: int, disk_gb: int,
               owner_sid: str, owner_name: str, description: str = "",
               operating_system: str = "", subdomain: Optional[str] = None) -> ProvisionedVM:
        """템플릿으로부터 새 VM을 만들고 요청한 리소스로 설정합니다."""
        pass

    @abstractmethod
    def destroy(self, vmid: str, owner_sid: str) -> None:
        """실행 중이면 강제로 끈 뒤 VM을 삭제합니다."""
        pass

    def bind_address(self, vmid: str, address: str) -> None:
        """VM 쪽 네트워크 설정에 IP를 반영합니다. 기본 구현은 아무것도 하지 않습니다."""
        return None


def snapshot_from_ledger(vm, status: str, node: Optional[str] = None) -> VMSnapshot:
    """원장 레코드와 하이퍼바이저가 알려준 상태로 VMSnapshot을 만듭니다."""
    return VMSnapshot(
        vmid=vm.vmid,
        name=vm.name,
        status=status,
        memory_mb=vm.memory_mb,
        cpu_cores=vm.cpu_cores,
        disk_gb=vm.disk_gb,
        node=node,
        ledger_id=vm.id,
        owner_name=vm.owner_name,
        description=vm.description,
        operating_system=vm.operating_system,
        expires_at=vm.expires_at,
        address=vm.ip_address.address if vm.ip_address else None,
        subdomain=vm.subdomain,
    )
