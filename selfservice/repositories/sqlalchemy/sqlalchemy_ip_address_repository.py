from typing import List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from selfservice.database import models
from selfservice.database.models import IPState
from selfservice.repositories.interfaces import IIPAddressRepository

class SqlalchemyIPAddressRepository(IIPAddressRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def add(self, address: str) -> bool:
        self.db.add(models.IPAddress(address=address, state=IPState.FREE))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        return True

    def list_free_candidates(self, limit: int) -> List[str]:
        rows = self.db.query(models.IPAddress.address).filter(
            models.IPAddress.state == IPState.FREE
        ).order_by(models.IPAddress.id).limit(limit).all()
        # 읽기 전용 트랜잭션을 바로 끝내 다른 writer를 막지 않도록 함
        self.db.commit()
        return [row[0] for row in rows]

    def mark_claimed(self, address: str, claim_token: str) -> bool:
        updated = self.db.query(models.IPAddress).filter(
            models.IPAddress.address == address,
            models.IPAddress.state == IPState.FREE
        ).update({
            models.IPAddress.state: IPState.CLAIMED,
            models.IPAddress.claim_token: claim_token,
        }, synchronize_session=False)
        self.db.commit()
        return updated == 1

    def mark_assigned(self, address: str, claim_token: str, vm_id: int) -> bool:
        updated = self.db.query(models.IPAddress).filter(
            models.IPAddress.address == address,
            models.IPAddress.state == IPState.CLAIMED,
            models.IPAddress.claim_token == claim_token
        ).update({
            models.IPAddress.state: IPState.ASSIGNED,
            models.IPAddress.virtual_machine_id: vm_id,
        }, synchronize_session=False)
        self.db.commit()
        return updated == 1

    def mark_free(self, address: str) -> bool:
        updated = self.db.query(models.IPAddress).filter(
            models.IPAddress.address == address
        ).update({
            models.IPAddress.state: IPState.FREE,
            models.IPAddress.claim_token: None,
            models.IPAddress.virtual_machine_id: None,
        }, synchronize_session=False)
        self.db.commit()
        return updated == 1

    def find_by_address(self, address: str) -> Optional[models.IPAddress]:
        return self.db.query(models.IPAddress).filter(models.IPAddress.address == address).first()

    def find_by_vm_id(self, vm_id: int) -> Optional[models.IPAddress]:
        return self.db.query(models.IPAddress).filter(
            models.IPAddress.virtual_machine_id == vm_id,
            models.IPAddress.state == IPState.ASSIGNED
        ).first()

    def count_by_state(self, state: str) -> int:
        return self.db.query(models.IPAddress).filter(models.IPAddress.state == state).count()
