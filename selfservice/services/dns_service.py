import ipaddress
import logging
import re
from typing import Dict, List, Optional, Tuple

import requests

from selfservice.config import DnsSettings
from selfservice.database import models
from selfservice.repositories.interfaces import IDnsRecordRepository
from selfservice.services.exceptions import (
    DnsControllerError,
    DnsQuotaExceededError,
    DnsRecordNotFoundError,
    DomainInUseError,
    DuplicateRecordError,
    InvalidRecordValueError,
    ProvisioningError,
    UnsupportedRecordTypeError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9-]+(\.[a-z0-9-]+)*$")
# 한 VM이 가질 수 있는 최상위 서브도메인 그룹 수
MAX_TOP_LEVEL_GROUPS = 2
NOT_FOUND_MARKERS = ("not exist", "not found", "no such")

# 값을 그대로 쓰는 타입과 Technitium 쿼리 파라미터 이름
VERBATIM_TYPES = {
    "CNAME": "cname",
    "TXT": "text",
    "PTR": "ptrName",
    "DNAME": "dname",
    "ANAME": "aname",
}
# 공백으로 나눈 토큰 수가 정해진 타입
TOKENIZED_TYPES = {
    "MX": ("preference", "exchange"),
    "SRV": ("priority", "weight", "port", "target"),
    "CAA": ("flags", "tag", "value"),
}


def top_level_subdomain(subdomain: str) -> str:
    """레이블이 두 개보다 많으면 마지막 두 레이블을, 아니면 서브도메인 전체를 반환합니다."""
    labels = subdomain.split(".")
    if len(labels) > 2:
        return ".".join(labels[-2:])
    return subdomain


def record_value_params(record_type: str, value: str) -> Dict[str, str]:
    """
    레코드 값을 타입별 형식으로 검증하고 Technitium 쿼리 파라미터로 바꿉니다.

    Raises:
        UnsupportedRecordTypeError: 지원하지 않는 레코드 타입일 때.
        InvalidRecordValueError: 값이 타입의 형식과 맞지 않을 때.
    """
    if record_type in ("A", "AAAA"):
        expected = ipaddress.IPv4Address if record_type == "A" else ipaddress.IPv6Address
        try:
            parsed = ipaddress.ip_address(value.strip())
        except ValueError:
            parsed = None
        if not isinstance(parsed, expected):
            raise InvalidRecordValueError(
                f"{record_type} record requires a valid IPv{4 if record_type == 'A' else 6} address.",
                field="value",
            )
        return {"ipAddress": str(parsed)}

    if record_type in TOKENIZED_TYPES:
        names = TOKENIZED_TYPES[record_type]
        tokens = value.split()
        if len(tokens) != len(names):
            raise InvalidRecordValueError(
                f"{record_type} record requires exactly {len(names)} space separated values "
                f"({', '.join(names)}).",
                field="value",
            )
        return dict(zip(names, tokens))

    if record_type in VERBATIM_TYPES:
        return {VERBATIM_TYPES[record_type]: value}

    raise UnsupportedRecordTypeError(f"Record type '{record_type}' is not supported.", field="record_type")


class TechnitiumClient:
    """Technitium DNS 서버 HTTP API 클라이언트 (token 쿼리 파라미터 인증)"""

    def __init__(self, settings: DnsSettings, verify_tls: bool = True, timeout: int = 30,
                 session: Optional[requests.Session] = None):
        self.settings = settings
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify_tls

    def _call(self, path: str, params: Dict[str, str]) -> dict:
        query = {"token": self.settings.token}
        query.update(params)
        try:
            response = self.session.get(f"{self.settings.url}/api/{path}", params=query, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise DnsControllerError(f"Cannot reach DNS server at {self.settings.url}: {e}") from e

        if response.status_code != 200:
            raise DnsControllerError(f"DNS request {path} failed with status {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise DnsControllerError(f"DNS request {path} returned invalid JSON") from e
        if payload.get("status") != "ok":
            raise DnsControllerError(payload.get("errorMessage") or f"DNS request {path} failed: {payload}")
        return payload

    def add_record(self, zone: str, domain: str, record_type: str, ttl: int, value_params: Dict[str, str]) -> None:
        params = {"zone": zone, "domain": domain, "type": record_type, "ttl": str(ttl), "overwrite": "false"}
        params.update(value_params)
        self._call("zones/records/add", params)

    def delete_record(self, zone: str, domain: str, record_type: str, value_params: Dict[str, str]) -> bool:
        """레코드를 삭제합니다. 이미 없으면 False를 반환합니다."""
        params = {"zone": zone, "domain": domain, "type": record_type}
        params.update(value_params)
        try:
            self._call("zones/records/delete", params)
        except DnsControllerError as e:
            if any(marker in str(e).lower() for marker in NOT_FOUND_MARKERS):
                return False
            raise
        return True


class DnsService:
    """
    VM에 딸린 DNS 레코드를 원장과 DNS 서버에 함께 관리합니다.

    레코드는 원장에 먼저 쓰고 DNS 서버에 게시합니다. 게시에 실패하면 원장 레코드를
    다시 지우므로, 원장에는 있는데 DNS 서버에는 없는 레코드가 남지 않습니다.
    """

    def __init__(self, record_repo: IDnsRecordRepository, client: TechnitiumClient, settings: DnsSettings):
        self.record_repo = record_repo
        self.client = client
        self.settings = settings

    @staticmethod
    def _domain(zone: str, subdomain: str) -> str:
        return f"{subdomain}.{zone}"

    def qualify(self, subdomain: str) -> str:
        """서브도메인 뒤에 관리용 접미사(domain_suffix)를 붙입니다. 이미 붙어 있으면 그대로 둡니다."""
        subdomain = (subdomain or "").strip().lower()
        suffix = self.settings.domain_suffix.strip().lower()
        if not suffix or not subdomain or subdomain.endswith(f".{suffix}"):
            return subdomain
        return f"{subdomain}.{suffix}"

    def create_record(self, zone: str, subdomain: str, record_type: str, value: str,
                      ttl: Optional[int], vm_id: int) -> models.DnsRecord:
        """
        VM에 DNS 레코드를 추가합니다.
        domain_suffix가 설정되어 있으면 서브도메인 뒤에 붙여서 저장합니다.

        다음 순서로 검사하며, 하나라도 실패하면 아무것도 쓰지 않습니다.
        1. 최상위 서브도메인이 다른 VM의 것이면 DomainInUseError
        2. 같은 (zone, subdomain, type, value)가 있으면 DuplicateRecordError
        3. VM이 이미 서로 다른 최상위 그룹 두 개를 가지고 있고, 요청이 그 중 하나가 아니면
           DnsQuotaExceededError
        4. 타입별 값 형식 검사 (UnsupportedRecordTypeError, InvalidRecordValueError)

        Raises:
            DnsControllerError: DNS 서버 게시에 실패했을 때 (원장 레코드는 되돌림).
        """
        subdomain = self.qualify(subdomain)
        record_type = (record_type or "").strip().upper()
        value = (value or "").strip()
        if not SUBDOMAIN_PATTERN.match(subdomain):
            raise ValidationError(f"Invalid subdomain '{subdomain}'.", field="subdomain")
        ttl = ttl or self.settings.default_ttl

        top_level = top_level_subdomain(subdomain)
        owners = self.record_repo.list_owner_vm_ids(zone, top_level)
        if any(owner != vm_id for owner in owners):
            raise DomainInUseError(f"Domain '{top_level}' is already in use by another VM.", field="subdomain")

        if self.record_repo.find(zone, subdomain, record_type, value):
            raise DuplicateRecordError(f"Record {record_type} {subdomain} -> {value} already exists.")

        groups = {
            top_level_subdomain(record.subdomain)
            for record in self.record_repo.list_by_vm_id(vm_id)
            if record.zone == zone and record.subdomain.count(".") == 1
        }
        if top_level not in groups and len(groups) >= MAX_TOP_LEVEL_GROUPS:
            raise DnsQuotaExceededError(
                f"A VM may not own more than {MAX_TOP_LEVEL_GROUPS} top-level subdomains.", field="subdomain"
            )

        value_params = record_value_params(record_type, value)

        record = self.record_repo.create(models.DnsRecord(
            zone=zone,
            subdomain=subdomain,
            record_type=record_type,
            record_value=value,
            ttl=ttl,
            virtual_machine_id=vm_id,
        ))
        try:
            self.client.add_record(zone, self._domain(zone, subdomain), record_type, ttl, value_params)
        except ProvisioningError:
            logger.error("Publishing %s %s failed, removing ledger record %s", record_type, subdomain, record.id)
            self.record_repo.delete_by_id(record.id)
            raise

        logger.info("Created DNS record %s %s.%s -> %s for VM %s", record_type, subdomain, zone, value, vm_id)
        return record

    def delete_record(self, zone: str, subdomain: str, record_type: str, value: str) -> None:
        """원장 레코드를 지운 뒤 DNS 서버에서 지웁니다. 이미 없어도 성공입니다."""
        record_type = record_type.upper()
        value_params = record_value_params(record_type, value)
        self.record_repo.delete(zone, subdomain, record_type, value)
        if not self.client.delete_record(zone, self._domain(zone, subdomain), record_type, value_params):
            logger.info("DNS record %s %s.%s was already absent", record_type, subdomain, zone)
        else:
            logger.info("Deleted DNS record %s %s.%s -> %s", record_type, subdomain, zone, value)

    def update_record(self, record_id: int, record_type: str, value: str,
                      ttl: Optional[int] = None, subdomain: Optional[str] = None) -> models.DnsRecord:
        """
        기존 레코드를 지우고 새 값으로 다시 만듭니다.

        새 레코드 생성에 실패하면 이전 레코드를 다시 만들어 둔 뒤 원래 예외를 던집니다.

        Raises:
            DnsRecordNotFoundError: record_id에 해당하는 레코드가 없을 때.
        """
        old = self.record_repo.find_by_id(record_id)
        if not old:
            raise DnsRecordNotFoundError(f"DNS record {record_id} not found.")
        previous = (old.zone, old.subdomain, old.record_type, old.record_value, old.ttl, old.virtual_machine_id)
        zone, old_subdomain, old_type, old_value, old_ttl, vm_id = previous

        # 새 값의 형식이 틀리면 기존 레코드를 건드리기 전에 실패
        record_value_params(record_type.upper(), value.strip())

        self.delete_record(zone, old_subdomain, old_type, old_value)
        try:
            return self.create_record(zone, subdomain or old_subdomain, record_type, value, ttl or old_ttl, vm_id)
        except ProvisioningError:
            logger.error("Update of DNS record %s failed, restoring previous value", record_id)
            try:
                self.create_record(zone, old_subdomain, old_type, old_value, old_ttl, vm_id)
            except ProvisioningError:
                logger.exception("Could not restore DNS record %s %s -> %s", old_type, old_subdomain, old_value)
            raise

    def list_records(self, vm_id: int) -> List[models.DnsRecord]:
        return self.record_repo.list_by_vm_id(vm_id)

    def delete_records_for_vm(self, vm_id: int) -> List[Tuple[str, str, str, str]]:
        """
        VM의 모든 레코드를 지웁니다. 실패한 레코드는 로그를 남기고 건너뜁니다.

        Returns:
            지우지 못한 레코드의 (zone, subdomain, type, value) 목록.
        """
        failed = []
        # 커밋 후에는 삭제된 인스턴스의 속성을 읽을 수 없으므로 값을 먼저 꺼내 둠
        records = [
            (record.zone, record.subdomain, record.record_type, record.record_value)
            for record in self.record_repo.list_by_vm_id(vm_id)
        ]
        for zone, subdomain, record_type, value in records:
            try:
                self.delete_record(zone, subdomain, record_type, value)
            except ProvisioningError:
                logger.exception("Failed to delete DNS record %s %s.%s of VM %s", record_type, subdomain, zone, vm_id)
                failed.append((zone, subdomain, record_type, value))
        return failed
