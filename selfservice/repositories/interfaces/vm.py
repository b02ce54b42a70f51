from abc import ABC, abstractmethod
from typing import List, Optional, Sequence
from selfservice.database import models

class IVMRepository(ABC):
    @abstractmethod
    def create(self, vm_model: models.VirtualMachine) -> models.VirtualMachine:
        """새로운 VM 원장 레코드를 생성합니다. 같은 (소유자, 이름)이 있으면 VmAlreadyExistsError."""
        pass

    @abstractmethod
    def find_by_id(self, vm_id: int) -> Optional[models.VirtualMachine]:
        """원장 ID로 VM을 조회합니다."""
        pass

    @abstractmethod
    def find_by_id_and_owner(self, vm_id: int, owner_sid: str) -> Optional[models.VirtualMachine]:
        """소유자 범위 안에서 원장 ID로 VM을 조회합니다."""
        pass

    @abstractmethod
    def find_by_name_and_owner(self, name: str, owner_sid: str) -> Optional[models.VirtualMachine]:
        """소유자 범위 안에서 이름으로 VM을 조회합니다."""
        pass

    @abstractmethod
    def list_by_owner(self, owner_sid: str) -> List[models.VirtualMachine]:
        """특정 소유자의 모든 VM 목록을 조회합니다."""
        pass

    @abstractmethod
    def list_all(self) -> List[models.VirtualMachine]:
        """원장에 있는 모든 VM 목록을 조회합니다."""
        pass

    @abstractmethod
    def count_by_owner(self, owner_sid: str) -> int:
        """특정 소유자의 VM 개수를 조회합니다."""
        pass

    @abstractmethod
    def bind_hypervisor(self, vm: models.VirtualMachine, vmid: str) -> models.VirtualMachine:
        """하이퍼바이저가 부여한 VM ID를 원장 레코드에 기록합니다."""
        pass

    @abstractmethod
    def transition_state(self, vm: models.VirtualMachine, from_states: Sequence[str], to_state: str) -> bool:
        """현재 상태가 from_states 중 하나일 때만 to_state로 바꿉니다. 성공하면 True."""
        pass

    @abstractmethod
    def delete(self, vm: models.VirtualMachine) -> bool:
        """VM 원장 레코드(및 딸린 DNS 레코드)를 삭제합니다."""
        pass
