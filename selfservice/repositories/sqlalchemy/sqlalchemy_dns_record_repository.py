from typing import List, Optional
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from selfservice.database import models
from selfservice.repositories.interfaces import IDnsRecordRepository
from selfservice.services.exceptions import DuplicateRecordError

class SqlalchemyDnsRecordRepository(IDnsRecordRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, record: models.DnsRecord) -> models.DnsRecord:
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateRecordError(
                f"Record {record.record_type} {record.subdomain} -> {record.record_value} already exists."
            ) from e
        self.db.refresh(record)
        return record

    def find_by_id(self, record_id: int) -> Optional[models.DnsRecord]:
        return self.db.query(models.DnsRecord).filter(models.DnsRecord.id == record_id).first()

    def find(self, zone: str, subdomain: str, record_type: str, record_value: str) -> Optional[models.DnsRecord]:
        return self.db.query(models.DnsRecord).filter(
            models.DnsRecord.zone == zone,
            models.DnsRecord.subdomain == subdomain,
            models.DnsRecord.record_type == record_type,
            models.DnsRecord.record_value == record_value
        ).first()

    def list_by_vm_id(self, vm_id: int) -> List[models.DnsRecord]:
        return self.db.query(models.DnsRecord).filter(
            models.DnsRecord.virtual_machine_id == vm_id
        ).order_by(models.DnsRecord.id).all()

    def list_owner_vm_ids(self, zone: str, top_level_subdomain: str) -> List[int]:
        rows = self.db.query(models.DnsRecord.virtual_machine_id).filter(
            models.DnsRecord.zone == zone,
            or_(
                models.DnsRecord.subdomain == top_level_subdomain,
                models.DnsRecord.subdomain.endswith("." + top_level_subdomain, autoescape=True)
            )
        ).distinct().all()
        return [row[0] for row in rows]

    def delete(self, zone: str, subdomain: str, record_type: str, record_value: str) -> int:
        deleted = self.db.query(models.DnsRecord).filter(
            models.DnsRecord.zone == zone,
            models.DnsRecord.subdomain == subdomain,
            models.DnsRecord.record_type == record_type,
            models.DnsRecord.record_value == record_value
        ).delete(synchronize_session=False)
        self.db.commit()
        return deleted

    def delete_by_id(self, record_id: int) -> bool:
        deleted = self.db.query(models.DnsRecord).filter(
            models.DnsRecord.id == record_id
        ).delete(synchronize_session=False)
        self.db.commit()
        return deleted == 1
