# tests/services/test_ip_pool_service.py
import threading
from unittest.mock import MagicMock

import pytest

from selfservice.database.models import IPState
from selfservice.repositories.interfaces import IIPAddressRepository
from selfservice.repositories.sqlalchemy import SqlalchemyIPAddressRepository
from selfservice.services.ip_pool_service import IPAllocation, IPPoolService
from selfservice.services.exceptions import (
    InvalidIPStateError,
    IPNotFoundError,
    IPPoolExhaustedError,
    ValidationError,
)

# ===================================================================
#  테스트를 위한 Fixture 설정
# ===================================================================

@pytest.fixture
def mock_ip_repo() -> MagicMock:
    """IIPAddressRepository에 대한 모의(Mock) 객체를 생성하여 반환합니다."""
    return MagicMock(spec=IIPAddressRepository)


@pytest.fixture
def ip_pool(mock_ip_repo: MagicMock) -> IPPoolService:
    return IPPoolService(mock_ip_repo)


# ===================================================================
#  claim / assign / release 테스트 스위트
# ===================================================================
class TestClaim:
    def test_claim_takes_next_candidate_when_first_is_lost(self, ip_pool, mock_ip_repo):
        """다른 요청이 먼저 가져간 후보는 건너뛰고 다음 후보를 claim하는지 테스트합니다."""
        # === Arrange ===
        mock_ip_repo.list_free_candidates.return_value = ["10.0.0.10", "10.0.0.11"]
        mock_ip_repo.mark_claimed.side_effect = [False, True]

        # === Act ===
        allocation = ip_pool.claim()

        # === Assert ===
        assert allocation.address == "10.0.0.11"
        assert allocation.state == IPState.CLAIMED
        assert allocation.claim_token
        assert mock_ip_repo.mark_claimed.call_count == 2

    def test_claim_raises_when_pool_is_empty(self, ip_pool, mock_ip_repo):
        """free 주소가 없으면 IPPoolExhaustedError가 발생하는지 테스트합니다."""
        mock_ip_repo.list_free_candidates.return_value = []

        with pytest.raises(IPPoolExhaustedError):
            ip_pool.claim()

    def test_assign_requires_matching_claim_token(self, ip_pool, mock_ip_repo):
        """이 시도의 토큰으로 claim된 주소가 아니면 assign이 거부되는지 테스트합니다."""
        # === Arrange ===
        mock_ip_repo.mark_assigned.return_value = False
        allocation = IPAllocation(address="10.0.0.10", state=IPState.CLAIMED, claim_token="other")

        # === Act & Assert ===
        with pytest.raises(InvalidIPStateError):
            ip_pool.assign(allocation, vm_id=1)
        mock_ip_repo.mark_assigned.assert_called_once_with("10.0.0.10", "other", 1)

    def test_release_of_unknown_address_is_not_an_error(self, ip_pool, mock_ip_repo):
        mock_ip_repo.mark_free.return_value = False

        ip_pool.release("10.0.0.99")

        mock_ip_repo.mark_free.assert_called_once_with("10.0.0.99")

    def test_lookup_raises_when_vm_has_no_address(self, ip_pool, mock_ip_repo):
        mock_ip_repo.find_by_vm_id.return_value = None

        with pytest.raises(IPNotFoundError):
            ip_pool.lookup(42)


class TestPoolSeeding:
    def test_add_addresses_reports_invalid_and_duplicate_entries(self, ip_pool, mock_ip_repo):
        """형식이 틀린 주소와 이미 있는 주소가 실패 목록으로 반환되는지 테스트합니다."""
        # === Arrange ===
        mock_ip_repo.add.side_effect = [True, False]

        # === Act ===
        failed = ip_pool.add_addresses(["10.0.0.1", "not-an-ip", "10.0.0.2"])

        # === Assert ===
        assert failed == ["not-an-ip", "10.0.0.2"]
        assert mock_ip_repo.add.call_count == 2

    def test_seed_range_skips_excluded_addresses(self, ip_pool, mock_ip_repo):
        mock_ip_repo.add.return_value = True

        addresses = ip_pool.seed_range("10.0.0.1", "10.0.0.4", excluded=["10.0.0.2"])

        assert addresses == ["10.0.0.1", "10.0.0.3", "10.0.0.4"]

    def test_seed_range_rejects_reversed_range(self, ip_pool):
        with pytest.raises(ValidationError):
            ip_pool.seed_range("10.0.0.9", "10.0.0.1")


# ===================================================================
#  실제 SQLite DB를 사용하는 동시성 테스트
# ===================================================================
class TestConcurrentClaims:
    POOL_SIZE = 6

    def test_concurrent_claims_never_share_an_address(self, session_factory):
        """
        N개의 주소에 N+1개의 claim이 동시에 들어오면, 돌려받은 주소는 모두 다르고
        정확히 하나의 요청만 IPPoolExhaustedError를 받는지 테스트합니다.
        """
        # === Arrange ===
        seed_session = session_factory()
        IPPoolService(SqlalchemyIPAddressRepository(seed_session)).seed_range(
            "192.168.50.1", f"192.168.50.{self.POOL_SIZE}"
        )
        seed_session.close()

        workers = self.POOL_SIZE + 1
        barrier = threading.Barrier(workers)
        claimed, exhausted, errors = [], [], []
        lock = threading.Lock()

        def claim():
            session = session_factory()
            try:
                service = IPPoolService(SqlalchemyIPAddressRepository(session))
                barrier.wait()
                allocation = service.claim()
                with lock:
                    claimed.append(allocation.address)
            except IPPoolExhaustedError:
                with lock:
                    exhausted.append(True)
            except Exception as e:
                with lock:
                    errors.append(e)
            finally:
                session.close()

        # === Act ===
        threads = [threading.Thread(target=claim) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # === Assert ===
        assert errors == []
        assert len(claimed) == self.POOL_SIZE
        assert len(set(claimed)) == len(claimed)
        assert len(exhausted) == 1

        check_session = session_factory()
        repo = SqlalchemyIPAddressRepository(check_session)
        assert repo.count_by_state(IPState.CLAIMED) == self.POOL_SIZE
        assert repo.count_by_state(IPState.FREE) == 0
        check_session.close()
