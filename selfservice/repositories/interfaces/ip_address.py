from abc import ABC, abstractmethod
from typing import List, Optional
from selfservice.database import models

class IIPAddressRepository(ABC):
    @abstractmethod
    def add(self, address: str) -> bool:
        """주소를 free 상태로 풀에 추가합니다. 이미 있으면 False."""
        pass

    @abstractmethod
    def list_free_candidates(self, limit: int) -> List[str]:
        """free 상태인 주소 후보를 최대 limit개 조회합니다."""
        pass

    @abstractmethod
    def mark_claimed(self, address: str, claim_token: str) -> bool:
        """free인 경우에만 claimed로 바꾸는 조건부 업데이트. 이긴 호출자만 True."""
        pass

    @abstractmethod
    def mark_assigned(self, address: str, claim_token: str, vm_id: int) -> bool:
        """같은 토큰으로 claimed된 경우에만 assigned로 바꿉니다."""
        pass

    @abstractmethod
    def mark_free(self, address: str) -> bool:
        """상태와 관계없이 free로 되돌립니다. 주소가 없으면 False."""
        pass

    @abstractmethod
    def find_by_address(self, address: str) -> Optional[models.IPAddress]:
        """주소로 풀 항목을 조회합니다."""
        pass

    @abstractmethod
    def find_by_vm_id(self, vm_id: int) -> Optional[models.IPAddress]:
        """VM에 할당된 주소를 조회합니다."""
        pass

    @abstractmethod
    def count_by_state(self, state: str) -> int:
        """상태별 주소 개수를 조회합니다."""
        pass
