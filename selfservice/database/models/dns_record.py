from sqlalchemy import Column, Integer, String, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base


class DnsRecord(Base):
    """
    VM에 속한 DNS 레코드입니다. (zone, subdomain, type, value)로 유일하며,
    VM이 삭제되면 함께 삭제됩니다.
    """
    __tablename__ = "dns_records"
    __table_args__ = (
        UniqueConstraint("zone", "subdomain", "record_type", "record_value", name="uq_dns_records_tuple"),
    )

    id = Column(Integer, primary_key=True, index=True)
    zone = Column(String, nullable=False)
    subdomain = Column(String, nullable=False, index=True)
    record_type = Column(String, nullable=False)
    record_value = Column(String, nullable=False)
    ttl = Column(Integer, nullable=True)

    virtual_machine_id = Column(Integer, ForeignKey("virtual_machines.id", ondelete="CASCADE"), nullable=False, index=True)
    virtual_machine = relationship("VirtualMachine", back_populates="dns_records")
