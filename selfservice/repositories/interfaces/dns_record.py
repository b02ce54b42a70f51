from abc import ABC, abstractmethod
from typing import List, Optional
from selfservice.database import models

class IDnsRecordRepository(ABC):
    @abstractmethod
    def create(self, record: models.DnsRecord) -> models.DnsRecord:
        """DNS 레코드를 원장에 생성합니다."""
        pass

    @abstractmethod
    def find_by_id(self, record_id: int) -> Optional[models.DnsRecord]:
        """ID로 레코드를 조회합니다."""
        pass

    @abstractmethod
    def find(self, zone: str, subdomain: str, record_type: str, record_value: str) -> Optional[models.DnsRecord]:
        """(zone, subdomain, type, value)가 정확히 일치하는 레코드를 조회합니다."""
        pass

    @abstractmethod
    def list_by_vm_id(self, vm_id: int) -> List[models.DnsRecord]:
        """VM에 속한 모든 레코드를 조회합니다."""
        pass

    @abstractmethod
    def list_owner_vm_ids(self, zone: str, top_level_subdomain: str) -> List[int]:
        """최상위 서브도메인(또는 그 하위)에 레코드를 가진 VM ID 목록을 조회합니다."""
        pass

    @abstractmethod
    def delete(self, zone: str, subdomain: str, record_type: str, record_value: str) -> int:
        """일치하는 레코드를 삭제하고 삭제된 행 수를 반환합니다."""
        pass

    @abstractmethod
    def delete_by_id(self, record_id: int) -> bool:
        """ID로 레코드를 삭제합니다."""
        pass
