from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint, func
from sqlalchemy.orm import relationship
from ..database import Base


class VmState:
    PENDING = "pending"
    ACTIVE = "active"
    DELETING = "deleting"


class VirtualMachine(Base):
    """
    학생이 요청한 가상 머신의 원장(ledger) 레코드입니다.
    소유자, 메타데이터, 생명주기 상태, 하이퍼바이저 ID를 보관하며,
    보상(compensation) 여부를 판단하는 기준이 됩니다.
    소유자는 변경 가능한 사용자 이름이 아니라 고정된 subject ID(owner_sid)로 식별합니다.
    """
    __tablename__ = "virtual_machines"
    __table_args__ = (
        UniqueConstraint("owner_sid", "name", name="uq_virtual_machines_owner_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    vmid = Column(String, nullable=True, index=True)
    hypervisor = Column(String, nullable=False)
    owner_sid = Column(String, nullable=False, index=True)
    owner_name = Column(String, nullable=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    operating_system = Column(String, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    memory_mb = Column(Integer, nullable=False)
    cpu_cores = Column(Integer, nullable=False)
    disk_gb = Column(Integer, nullable=False)
    subdomain = Column(String, nullable=True)
    state = Column(String, nullable=False, default=VmState.PENDING)
    created_at = Column(DateTime, server_default=func.now())

    ip_address = relationship("IPAddress", back_populates="virtual_machine", uselist=False)
    dns_records = relationship("DnsRecord", back_populates="virtual_machine", cascade="all, delete-orphan")
