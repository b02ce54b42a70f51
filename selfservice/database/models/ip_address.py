from sqlalchemy import Column, Integer, String, ForeignKey
from sqlalchemy.orm import relationship
from ..database import Base


class IPState:
    FREE = "free"
    CLAIMED = "claimed"
    ASSIGNED = "assigned"


class IPAddress(Base):
    """
    VM에 할당할 수 있는 IP 주소 풀의 한 항목입니다.
    free -> claimed -> assigned -> free 순서로만 상태가 바뀌며,
    claim_token은 어떤 생성 시도가 이 주소를 예약했는지를 나타냅니다.
    """
    __tablename__ = "ip_addresses"
    id = Column(Integer, primary_key=True, index=True)
    address = Column(String, unique=True, nullable=False, index=True)
    state = Column(String, nullable=False, default=IPState.FREE, index=True)
    claim_token = Column(String, nullable=True)

    virtual_machine_id = Column(Integer, ForeignKey("virtual_machines.id", ondelete="SET NULL"), nullable=True, unique=True)
    virtual_machine = relationship("VirtualMachine", back_populates="ip_address")
