from .vm import IVMRepository
from .ip_address import IIPAddressRepository
from .dns_record import IDnsRecordRepository

__all__ = ["IVMRepository", "IIPAddressRepository", "IDnsRecordRepository"]
