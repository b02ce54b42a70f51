import logging
import re
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from xml.sax.saxutils import escape

import requests

from selfservice.config import FirewallSettings
from selfservice.services.exceptions import FirewallAuthError, FirewallError, ProvisioningError

logger = logging.getLogger(__name__)

STATUS_PATTERN = re.compile(r'<Status\s+code="(\d+)"')

CONFIRMED = "confirmed"
UNCONFIRMED = "unconfirmed"
FAILED = "failed"


class SophosClient:
    """
    Sophos 방화벽 XML API 클라이언트입니다.

    모든 요청은 로그인 정보를 담은 <Request> 문서를 reqxml 폼 필드로 POST합니다.
    HTTP 상태가 아니라 응답 본문의 <Status code="200">으로 성공 여부를 판단합니다.
    """

    def __init__(self, settings: FirewallSettings, verify_tls: bool = True, timeout: int = 30,
                 session: Optional[requests.Session] = None):
        self.settings = settings
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify_tls

    def _wrap(self, body: str) -> str:
        return (
            "<Request>"
            "<Login>"
            f"<Username>{escape(self.settings.username)}</Username>"
            f"<Password>{escape(self.settings.password)}</Password>"
            "</Login>"
            f"{body}"
            "</Request>"
        )

    def send(self, body: str) -> str:
        """요청을 보내고 응답 본문을 반환합니다."""
        try:
            response = self.session.post(
                self.settings.url,
                data={"reqxml": self._wrap(body)},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise FirewallError(f"Cannot reach firewall at {self.settings.url}: {e}") from e

        if response.status_code == 401 or "Authentication Failure" in response.text:
            raise FirewallAuthError("Firewall authentication failed.")
        if response.status_code >= 400:
            raise FirewallError(
                f"Firewall request failed | Status: {response.status_code} | Body: {response.text[:500]}"
            )
        return response.text

    @staticmethod
    def status_codes(response_text: str) -> List[int]:
        return [int(code) for code in STATUS_PATTERN.findall(response_text)]

    def is_confirmed(self, response_text: str) -> bool:
        return 200 in self.status_codes(response_text)


class FirewallService:
    """
    VM마다 방화벽 객체 세 개(호스트, 인바운드 규칙, 아웃바운드 규칙)를 관리합니다.

    객체 이름은 (소유자, VM 이름)에서 만들어지므로 DB에 따로 저장하지 않습니다.
    """

    def __init__(self, client: SophosClient, settings: FirewallSettings):
        self.client = client
        self.settings = settings

    # --- 객체 이름 ---
    def host_name(self, owner_key: str, vm_name: str) -> str:
        return f"{self.settings.name_prefix}-HOST-{owner_key}-{vm_name}"

    def inbound_rule_name(self, owner_key: str, vm_name: str) -> str:
        return f"{self.settings.name_prefix}-Inbound-{owner_key}-{vm_name}"

    def outbound_rule_name(self, owner_key: str, vm_name: str) -> str:
        return f"{self.settings.name_prefix}-Outbound-{owner_key}-{vm_name}"

    # --- 요청 본문 ---
    @staticmethod
    def _list(tag: str, values: Iterable[str]) -> str:
        return "".join(f"<{tag}>{escape(value)}</{tag}>" for value in values)

    def _host_xml(self, name: str, address: str, host_groups: Iterable[str] = ()) -> str:
        groups = self._list("HostGroup", host_groups)
        return (
            '<Set operation="add"><IPHost>'
            f"<Name>{escape(name)}</Name>"
            "<HostType>IP</HostType>"
            f"<IPAddress>{escape(address)}</IPAddress>"
            f"{'<HostGroupList>' + groups + '</HostGroupList>' if groups else ''}"
            "</IPHost></Set>"
        )

    def _rule_xml(self, name: str, source_zones, source_networks, services,
                  destination_zones, destination_networks) -> str:
        return (
            '<Set operation="add"><FirewallRule>'
            f"<Name>{escape(name)}</Name>"
            "<Position>bottom</Position>"
            "<PolicyType>Network</PolicyType>"
            "<NetworkPolicy>"
            "<Action>Accept</Action>"
            f"<SourceZones>{self._list('Zone', source_zones)}</SourceZones>"
            f"<SourceNetworks>{self._list('Network', source_networks)}</SourceNetworks>"
            f"<Services>{self._list('Service', services)}</Services>"
            f"<DestinationZones>{self._list('Zone', destination_zones)}</DestinationZones>"
            f"<DestinationNetworks>{self._list('Network', destination_networks)}</DestinationNetworks>"
            "</NetworkPolicy>"
            "</FirewallRule></Set>"
        )

    @staticmethod
    def _remove_xml(entity: str, name: str) -> str:
        return f"<Remove><{entity}><Name>{escape(name)}</Name></{entity}></Remove>"

    def _apply(self, body: str, what: str) -> None:
        response = self.client.send(body)
        if not self.client.is_confirmed(response):
            raise FirewallError(f"Firewall rejected {what}: {response[:500]}")

    # --- 동시 실행 ---
    @staticmethod
    def _run_pair(calls: List[Tuple[str, Callable[[], object]]]) -> Dict[str, Tuple[object, Optional[Exception]]]:
        """두 호출을 동시에 실행하고, 둘 다 끝날 때까지 기다려 (결과, 예외)를 모읍니다."""
        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = {key: executor.submit(call) for key, call in calls}
            wait(list(futures.values()))
        results = {}
        for key, future in futures.items():
            error = future.exception()
            results[key] = (None if error else future.result(), error)
        return results

    # --- 공개 연산 ---
    def open_access(self, address: str, owner_key: str, vm_name: str, home_ips: Iterable[str] = ()) -> None:
        """
        VM 주소에 대한 호스트 객체와 인바운드/아웃바운드 규칙을 만들고 규칙 그룹에 넣습니다.

        세 객체 중 하나라도 실패하면 이번 호출에서 만든 객체를 지운 뒤 예외를 던집니다.
        개인(집) IP 등록 실패는 로그만 남깁니다.

        Raises:
            FirewallAuthError: 방화벽 인증에 실패했을 때.
            FirewallError: 객체 생성이나 규칙 그룹 갱신에 실패했을 때.
        """
        host = self.host_name(owner_key, vm_name)
        inbound = self.inbound_rule_name(owner_key, vm_name)
        outbound = self.outbound_rule_name(owner_key, vm_name)
        created = []

        try:
            self._apply(self._host_xml(host, address), f"host {host}")
            created.append(("IPHost", host))

            results = self._run_pair([
                (inbound, lambda: self._apply(self._rule_xml(
                    inbound,
                    source_zones=["LAN", "WAN"],
                    source_networks=self.settings.source_networks,
                    services=self.settings.inbound_services,
                    destination_zones=["DMZ"],
                    destination_networks=[host],
                ), f"rule {inbound}")),
                (outbound, lambda: self._apply(self._rule_xml(
                    outbound,
                    source_zones=["DMZ", "LAN"],
                    source_networks=[host],
                    services=self.settings.outbound_services,
                    destination_zones=["WAN"],
                    destination_networks=[],
                ), f"rule {outbound}")),
            ])
            first_error = None
            for name, (_, error) in results.items():
                if error is None:
                    created.append(("FirewallRule", name))
                elif first_error is None:
                    first_error = error
            if first_error is not None:
                raise first_error

            self._apply(
                '<Set operation="update"><FirewallRuleGroup>'
                f"<Name>{escape(self.settings.rule_group)}</Name>"
                "<SecurityPolicyList>"
                f"<SecurityPolicy>{escape(inbound)}</SecurityPolicy>"
                f"<SecurityPolicy>{escape(outbound)}</SecurityPolicy>"
                "</SecurityPolicyList>"
                "</FirewallRuleGroup></Set>",
                f"rule group {self.settings.rule_group}",
            )
        except ProvisioningError:
            logger.error("Opening access for %s failed, removing %d created object(s)", vm_name, len(created))
            self._remove_created(created)
            raise

        logger.info("Opened firewall access for %s (%s)", host, address)
        self._register_home_ips(owner_key, home_ips)

    def _remove_created(self, created: List[Tuple[str, str]]) -> None:
        # 규칙이 호스트를 참조하므로 규칙부터 지움
        for entity, name in reversed(created):
            try:
                self.client.send(self._remove_xml(entity, name))
            except ProvisioningError:
                logger.exception("Failed to remove partially created %s %s", entity, name)

    def _register_home_ips(self, owner_key: str, home_ips: Iterable[str]) -> None:
        for count, ip in enumerate(home_ips, start=1):
            name = f"{self.settings.name_prefix} {owner_key} Prive {count}"
            try:
                self._apply(self._host_xml(name, ip, [self.settings.personal_ip_group]), f"home IP {ip}")
            except ProvisioningError as e:
                logger.warning("Could not register home IP %s for %s: %s", ip, owner_key, e)

    def _remove(self, entity: str, name: str) -> Tuple[str, Optional[Exception]]:
        try:
            response = self.client.send(self._remove_xml(entity, name))
        except ProvisioningError as e:
            return FAILED, e
        if self.client.is_confirmed(response):
            return CONFIRMED, None
        return UNCONFIRMED, None

    def close_access(self, owner_key: str, vm_name: str) -> Dict[str, str]:
        """
        VM의 두 규칙을 동시에 지운 뒤 호스트 객체를 지웁니다.

        각 삭제는 confirmed(컨트롤러가 200으로 확인), unconfirmed(다른 상태로 응답,
        예: 이미 없음), failed(전송/타임아웃/인증 오류) 중 하나로 판정합니다.
        확인된 삭제가 하나도 없고 명시적 실패가 있을 때만 예외를 던지므로,
        두 번 호출해도 두 번 모두 성공합니다.

        Returns:
            객체 이름별 판정 결과.

        Raises:
            FirewallError: 아무것도 지우지 못했고 적어도 하나가 명시적으로 실패했을 때.
        """
        host = self.host_name(owner_key, vm_name)
        inbound = self.inbound_rule_name(owner_key, vm_name)
        outbound = self.outbound_rule_name(owner_key, vm_name)

        results = self._run_pair([
            (inbound, lambda: self._remove("FirewallRule", inbound)),
            (outbound, lambda: self._remove("FirewallRule", outbound)),
        ])
        outcomes = {
            name: (FAILED, error) if error is not None else result
            for name, (result, error) in results.items()
        }
        errors = [result[1] for result in outcomes.values() if result[1] is not None]
        outcomes[host] = self._remove("IPHost", host)
        if outcomes[host][1] is not None:
            errors.append(outcomes[host][1])

        summary = {name: outcome for name, (outcome, _) in outcomes.items()}
        if CONFIRMED not in summary.values() and errors:
            raise FirewallError(f"Could not close firewall access for {vm_name}: {errors[0]}") from errors[0]
        for name, outcome in summary.items():
            if outcome != CONFIRMED:
                logger.info("Removal of %s was %s", name, outcome)
        return summary
