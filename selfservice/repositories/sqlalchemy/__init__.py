from .sqlalchemy_vm_repository import SqlalchemyVMRepository
from .sqlalchemy_ip_address_repository import SqlalchemyIPAddressRepository
from .sqlalchemy_dns_record_repository import SqlalchemyDnsRecordRepository

__all__ = ["SqlalchemyVMRepository", "SqlalchemyIPAddressRepository", "SqlalchemyDnsRecordRepository"]
