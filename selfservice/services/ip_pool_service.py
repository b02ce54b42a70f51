import ipaddress
import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional

from selfservice.database.models import IPState
from selfservice.repositories.interfaces import IIPAddressRepository
from selfservice.services.exceptions import (
    IPPoolExhaustedError,
    IPNotFoundError,
    InvalidIPStateError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IPAllocation:
    address: str
    state: str
    claim_token: Optional[str] = None
    vm_id: Optional[int] = None


class IPPoolService:
    """
    VM에 할당할 IP 주소 풀을 관리합니다.

    claim/assign의 2단계 예약을 사용합니다. claim은 free인 주소 하나를
    조건부 업데이트로 claimed로 바꾸며, 동시에 여러 요청이 같은 주소를 노려도
    업데이트에 성공한 한 요청만 그 주소를 얻습니다.
    """
    CANDIDATE_BATCH = 16

    def __init__(self, ip_repo: IIPAddressRepository):
        self.ip_repo = ip_repo

    def claim(self) -> IPAllocation:
        """
        free 상태의 IP 하나를 claimed로 예약합니다.

        Returns:
            예약된 주소와 claim 토큰을 담은 IPAllocation.

        Raises:
            IPPoolExhaustedError: free 상태의 주소가 하나도 없을 때.
        """
        claim_token = str(uuid.uuid4())
        while True:
            candidates = self.ip_repo.list_free_candidates(self.CANDIDATE_BATCH)
            if not candidates:
                raise IPPoolExhaustedError("No IP addresses available.")
            for address in candidates:
                if self.ip_repo.mark_claimed(address, claim_token):
                    logger.info("Claimed IP %s", address)
                    return IPAllocation(address=address, state=IPState.CLAIMED, claim_token=claim_token)
            # 후보를 모두 다른 요청에 빼앗긴 경우, 새 후보로 다시 시도

    def assign(self, allocation: IPAllocation, vm_id: int) -> IPAllocation:
        """
        claim한 IP를 VM에 바인딩합니다 (claimed -> assigned).

        Raises:
            InvalidIPStateError: 이 시도의 토큰으로 claim된 상태가 아닐 때.
        """
        if not self.ip_repo.mark_assigned(allocation.address, allocation.claim_token, vm_id):
            raise InvalidIPStateError(
                f"IP {allocation.address} is not claimed by this provisioning attempt."
            )
        logger.info("Assigned IP %s to VM %s", allocation.address, vm_id)
        return IPAllocation(
            address=allocation.address,
            state=IPState.ASSIGNED,
            claim_token=allocation.claim_token,
            vm_id=vm_id,
        )

    def release(self, address: str) -> None:
        """IP를 free로 되돌립니다. 이미 free이거나 풀에 없는 주소여도 오류가 아닙니다."""
        if self.ip_repo.mark_free(address):
            logger.info("Released IP %s", address)
        else:
            logger.warning("Release requested for unknown IP %s, ignoring", address)

    def lookup(self, vm_id: int) -> IPAllocation:
        row = self.ip_repo.find_by_vm_id(vm_id)
        if not row:
            raise IPNotFoundError(f"No IP address assigned to VM {vm_id}.")
        return IPAllocation(
            address=row.address,
            state=row.state,
            claim_token=row.claim_token,
            vm_id=row.virtual_machine_id,
        )

    def add_addresses(self, addresses: Iterable[str]) -> List[str]:
        """
        주소들을 풀에 추가합니다.

        Returns:
            형식이 잘못되었거나 이미 존재해서 추가하지 못한 주소 목록.
        """
        failed = []
        for address in addresses:
            try:
                normalized = str(ipaddress.ip_address(address.strip()))
            except ValueError:
                logger.warning("Skipping invalid IP address %r", address)
                failed.append(address)
                continue
            if not self.ip_repo.add(normalized):
                logger.warning("IP address %s already exists in pool", normalized)
                failed.append(address)
        return failed

    def seed_range(self, first: str, last: str, excluded: Iterable[str] = ()) -> List[str]:
        """first부터 last까지(포함) excluded를 뺀 주소를 풀에 추가합니다."""
        try:
            start = ipaddress.ip_address(first)
            end = ipaddress.ip_address(last)
        except ValueError as e:
            raise ValidationError(f"Invalid IP pool range {first} - {last}: {e}") from e
        if start.version != end.version or start > end:
            raise ValidationError(f"Invalid IP pool range {first} - {last}.")

        skip = {str(ipaddress.ip_address(a)) for a in excluded}
        addresses = []
        current = start
        while current <= end:
            if str(current) not in skip:
                addresses.append(str(current))
            current += 1
        self.add_addresses(addresses)
        return addresses
