from typing import List, Optional, Sequence
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from selfservice.database import models
from selfservice.repositories.interfaces import IVMRepository
from selfservice.services.exceptions import VmAlreadyExistsError

class SqlalchemyVMRepository(IVMRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, vm_model: models.VirtualMachine) -> models.VirtualMachine:
        self.db.add(vm_model)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise VmAlreadyExistsError(
                f"VM name '{vm_model.name}' already exists for this user.", field="name"
            ) from e
        self.db.refresh(vm_model)
        return vm_model

    def find_by_id(self, vm_id: int) -> Optional[models.VirtualMachine]:
        return self.db.query(models.VirtualMachine).filter(models.VirtualMachine.id == vm_id).first()

    def find_by_id_and_owner(self, vm_id: int, owner_sid: str) -> Optional[models.VirtualMachine]:
        return self.db.query(models.VirtualMachine).filter(
            models.VirtualMachine.id == vm_id,
            models.VirtualMachine.owner_sid == owner_sid
        ).first()

    def find_by_name_and_owner(self, name: str, owner_sid: str) -> Optional[models.VirtualMachine]:
        return self.db.query(models.VirtualMachine).filter(
            models.VirtualMachine.name == name,
            models.VirtualMachine.owner_sid == owner_sid
        ).first()

    def list_by_owner(self, owner_sid: str) -> List[models.VirtualMachine]:
        return self.db.query(models.VirtualMachine).filter(
            models.VirtualMachine.owner_sid == owner_sid
        ).order_by(models.VirtualMachine.id).all()

    def list_all(self) -> List[models.VirtualMachine]:
        return self.db.query(models.VirtualMachine).order_by(models.VirtualMachine.id).all()

    def count_by_owner(self, owner_sid: str) -> int:
        return self.db.query(models.VirtualMachine).filter(models.VirtualMachine.owner_sid == owner_sid).count()

    def bind_hypervisor(self, vm: models.VirtualMachine, vmid: str) -> models.VirtualMachine:
        vm.vmid = str(vmid)
        self.db.commit()
        self.db.refresh(vm)
        return vm

    def transition_state(self, vm: models.VirtualMachine, from_states: Sequence[str], to_state: str) -> bool:
        updated = self.db.query(models.VirtualMachine).filter(
            models.VirtualMachine.id == vm.id,
            models.VirtualMachine.state.in_(list(from_states))
        ).update({models.VirtualMachine.state: to_state}, synchronize_session=False)
        self.db.commit()
        self.db.refresh(vm)
        return updated == 1

    def delete(self, vm: models.VirtualMachine) -> bool:
        if vm:
            self.db.delete(vm)
            self.db.commit()
            return True
        return False
