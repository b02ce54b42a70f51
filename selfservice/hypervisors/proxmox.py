# selfservice/hypervisors/proxmox.py
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from selfservice.config import ProxmoxSettings, Settings
from selfservice.hypervisors.base import (
    IHypervisor,
    ProvisionedVM,
    VMSnapshot,
    clamp_resources,
    snapshot_from_ledger,
)
from selfservice.utils.cache import TimedCache
from selfservice.services.exceptions import (
    CloneError,
    DiskResizeError,
    HypervisorAuthError,
    HypervisorError,
    HypervisorVmNotFoundError,
    ResourceConfigError,
    TemplateFetchError,
)

logger = logging.getLogger(__name__)

TICKET_CACHE_KEY = "proxmox:ticket"
# Proxmox 티켓은 2시간 동안 유효하므로 만료 전에 새로 발급받음
TICKET_TTL = 110 * 60
DISK_SIZE_PATTERN = re.compile(r"size=(\d+)([GgTt])")


class ProxmoxAPIError(HypervisorError):
    """Proxmox API가 오류 상태를 반환했을 때"""
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or "does not exist" in self.body


class ProxmoxClient:
    """Proxmox VE REST API(/api2/json) 클라이언트"""

    def __init__(self, settings: ProxmoxSettings, cache: TimedCache,
                 verify_tls: bool = True, timeout: int = 30,
                 session: Optional[requests.Session] = None):
        self.settings = settings
        self.api_base = f"{settings.url.rstrip('/')}/api2/json"
        self.cache = cache
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify_tls

    def _login(self) -> Dict[str, str]:
        try:
            response = self.session.post(
                f"{self.api_base}/access/ticket",
                data={"username": self.settings.username, "password": self.settings.password},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise HypervisorAuthError(f"Cannot reach Proxmox at {self.settings.url}: {e}") from e

        if response.status_code != 200:
            raise HypervisorAuthError(f"Proxmox authentication failed with status {response.status_code}")
        data = (response.json() or {}).get("data") or {}
        if not data.get("ticket"):
            raise HypervisorAuthError("Proxmox authentication returned no ticket")
        logger.info("Authenticated to Proxmox as %s", self.settings.username)
        return {"ticket": data["ticket"], "csrf": data.get("CSRFPreventionToken", "")}

    def _credentials(self) -> Dict[str, str]:
        return self.cache.get_or_refresh(TICKET_CACHE_KEY, self._login, ttl=TICKET_TTL)

    def request(self, method: str, path: str, **kwargs: Any) -> Any:
        """API를 호출하고 응답의 data 필드를 반환합니다."""
        credentials = self._credentials()
        headers = {"Cookie": f"PVEAuthCookie={credentials['ticket']}"}
        if method.upper() != "GET":
            headers["CSRFPreventionToken"] = credentials["csrf"]
        url = f"{self.api_base}/{path.lstrip('/')}"

        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise ProxmoxAPIError(f"Proxmox request failed: {method} {path}: {e}") from e

        if response.status_code == 401:
            self.cache.invalidate(TICKET_CACHE_KEY)
            raise HypervisorAuthError("Proxmox ticket was rejected")
        if response.status_code >= 400:
            body = response.text[:500]
            raise ProxmoxAPIError(
                f"Proxmox request failed: {method} {path} | Status: {response.status_code} | Body: {body}",
                status_code=response.status_code,
                body=body,
            )
        if not response.content:
            return None
        return response.json().get("data")

    def next_vmid(self) -> int:
        return int(self.request("GET", "cluster/nextid"))

    def vm_config(self, node: str, vmid: int) -> Dict[str, Any]:
        return self.request("GET", f"nodes/{node}/qemu/{vmid}/config") or {}

    def clone(self, node: str, template_vmid: int, new_vmid: int, name: str) -> str:
        return self.request(
            "POST",
            f"nodes/{node}/qemu/{template_vmid}/clone",
            data={"newid": new_vmid, "name": name, "full": 1},
        )

    def update_config(self, node: str, vmid: int, params: Dict[str, Any]) -> None:
        self.request("PUT", f"nodes/{node}/qemu/{vmid}/config", data=params)

    def resize_disk(self, node: str, vmid: int, disk: str, size: str) -> None:
        self.request("PUT", f"nodes/{node}/qemu/{vmid}/resize", data={"disk": disk, "size": size})

    def vm_status(self, node: str, vmid: int) -> Dict[str, Any]:
        return self.request("GET", f"nodes/{node}/qemu/{vmid}/status/current") or {}

    def stop(self, node: str, vmid: int) -> str:
        return self.request("POST", f"nodes/{node}/qemu/{vmid}/status/stop")

    def delete(self, node: str, vmid: int) -> str:
        return self.request(
            "DELETE",
            f"nodes/{node}/qemu/{vmid}",
            params={"purge": 1, "destroy-unreferenced-disks": 1},
        )

    def list_nodes(self) -> List[Dict[str, Any]]:
        return self.request("GET", "nodes") or []

    def list_node_vms(self, node: str) -> List[Dict[str, Any]]:
        return self.request("GET", f"nodes/{node}/qemu") or []

    def task_status(self, node: str, upid: str) -> Dict[str, Any]:
        return self.request("GET", f"nodes/{node}/tasks/{upid}/status") or {}


class ProxmoxHypervisor(IHypervisor):
    """
    템플릿 VM을 전체 복제(full clone)한 뒤 리소스를 재설정하는 Proxmox 백엔드입니다.

    생성 순서: VM ID 할당 -> 템플릿 설정 조회 -> 복제 및 작업 완료 대기
    -> CPU/메모리 설정 -> (필요 시) 디스크 확장.
    """
    name = "proxmox"

    def __init__(self, client: ProxmoxClient, settings: Settings,
                 sleep: Callable[[float], None] = time.sleep, poll_interval: float = 2.0):
        self.client = client
        self.settings = settings
        self.node = settings.proxmox.node
        self.sleep = sleep
        self.poll_interval = poll_interval

    def _wait_for_task(self, upid: Optional[str]) -> None:
        """비동기 작업(UPID)이 끝날 때까지 기다립니다. task_timeout을 넘기면 실패합니다."""
        if not upid:
            return
        deadline = time.monotonic() + self.settings.task_timeout
        while True:
            status = self.client.task_status(self.node, upid)
            if status.get("status") == "stopped":
                if status.get("exitstatus") != "OK":
                    raise HypervisorError(f"Proxmox task {upid} failed: {status.get('exitstatus')}")
                return
            if time.monotonic() >= deadline:
                raise HypervisorError(f"Proxmox task {upid} did not finish within {self.settings.task_timeout}s")
            self.sleep(self.poll_interval)

    @staticmethod
    def _template_floor(config: Dict[str, Any], disk_bus: str):
        cores = int(config.get("cores") or 1)
        memory = int(config.get("memory") or 512)
        disk = 0
        match = DISK_SIZE_PATTERN.search(str(config.get(disk_bus) or ""))
        if match:
            disk = int(match.group(1))
            if match.group(2).lower() == "t":
                disk *= 1024
        return memory, cores, disk

    def create(self, name, memory_mb, cpu_cores, disk_gb, owner_sid, owner_name,
               description="", operating_system="", subdomain=None) -> ProvisionedVM:
        pve = self.settings.proxmox
        memory_mb, cpu_cores, disk_gb = clamp_resources(self.settings.limits, memory_mb, cpu_cores, disk_gb)

        try:
            vmid = self.client.next_vmid()
        except ProxmoxAPIError as e:
            raise CloneError(f"Failed to allocate a VM id: {e}") from e

        try:
            template = self.client.vm_config(self.node, pve.template_vmid)
        except ProxmoxAPIError as e:
            raise TemplateFetchError(f"Failed to read template {pve.template_vmid}: {e}") from e
        template_memory, template_cores, template_disk = self._template_floor(template, pve.disk_bus)

        try:
            upid = self.client.clone(self.node, pve.template_vmid, vmid, name)
        except ProxmoxAPIError as e:
            raise CloneError(f"Failed to clone template {pve.template_vmid}: {e}") from e
        logger.info("Cloning template %s into VM %s (%s)", pve.template_vmid, vmid, name)

        # 여기서부터는 VM이 존재할 수 있으므로 모든 오류에 vmid를 담아 보상 삭제가 가능하게 함
        try:
            configured = self._configure_clone(vmid, upid, template_memory, template_cores, template_disk,
                                               memory_mb, cpu_cores, disk_gb, owner_sid, owner_name, description)
        except (HypervisorError, HypervisorAuthError) as e:
            if e.vmid is None:
                e.vmid = str(vmid)
            raise
        except ValueError as e:
            # 응답 본문이 JSON이 아닐 때
            raise ResourceConfigError(f"Unexpected Proxmox response for VM {vmid}: {e}", vmid=str(vmid)) from e

        logger.info("VM %s (%s) is ready for %s", vmid, name, owner_sid)
        memory_mb, cpu_cores, disk_gb = configured
        return ProvisionedVM(
            vmid=str(vmid),
            name=name,
            memory_mb=memory_mb,
            cpu_cores=cpu_cores,
            disk_gb=disk_gb,
        )

    def _configure_clone(self, vmid, upid, template_memory, template_cores, template_disk,
                         memory_mb, cpu_cores, disk_gb, owner_sid, owner_name, description):
        """복제 완료를 기다린 뒤 CPU/메모리/디스크를 요청 값으로 맞추고 실제 적용된 값을 반환합니다."""
        pve = self.settings.proxmox
        try:
            self._wait_for_task(upid)
        except HypervisorError as e:
            raise CloneError(f"Clone of VM {vmid} did not complete: {e}", vmid=str(vmid)) from e

        params = {
            "sockets": 1,
            "numa": 0,
            "cpu": pve.cpu_type,
            "scsihw": "virtio-scsi-single",
            "net0": f"virtio,bridge={pve.bridge},firewall=1",
            "ciuser": pve.cloud_init_user,
            "description": f"owner: {owner_name} ({owner_sid})\n{description or ''}",
        }
        if memory_mb > template_memory:
            params["memory"] = memory_mb
        if cpu_cores > template_cores:
            params["cores"] = cpu_cores
        try:
            self.client.update_config(self.node, vmid, params)
        except ProxmoxAPIError as e:
            raise ResourceConfigError(f"Failed to configure VM {vmid}: {e}", vmid=str(vmid)) from e

        if disk_gb > template_disk:
            try:
                self.client.resize_disk(self.node, vmid, pve.disk_bus, f"+{disk_gb - template_disk}G")
            except ProxmoxAPIError as e:
                raise DiskResizeError(f"Failed to resize disk of VM {vmid}: {e}", vmid=str(vmid)) from e

        return max(memory_mb, template_memory), max(cpu_cores, template_cores), max(disk_gb, template_disk)

    def destroy(self, vmid: str, owner_sid: str) -> None:
        try:
            status = self.client.vm_status(self.node, vmid)
        except ProxmoxAPIError as e:
            if e.is_not_found:
                raise HypervisorVmNotFoundError(f"VM {vmid} does not exist on Proxmox.", vmid=vmid) from e
            raise

        try:
            if status.get("status") == "running":
                logger.info("Stopping VM %s before deletion", vmid)
                self._wait_for_task(self.client.stop(self.node, vmid))
            self._wait_for_task(self.client.delete(self.node, vmid))
        except ProxmoxAPIError as e:
            if e.is_not_found:
                raise HypervisorVmNotFoundError(f"VM {vmid} does not exist on Proxmox.", vmid=vmid) from e
            raise
        logger.info("Deleted VM %s owned by %s", vmid, owner_sid)

    def bind_address(self, vmid: str, address: str) -> None:
        pve = self.settings.proxmox
        ipconfig = f"ip={address}/{pve.prefix_length}"
        if pve.gateway:
            ipconfig += f",gw={pve.gateway}"
        try:
            self.client.update_config(self.node, vmid, {"ipconfig0": ipconfig})
        except ProxmoxAPIError as e:
            raise ResourceConfigError(f"Failed to set address of VM {vmid}: {e}", vmid=vmid) from e

    def list_all(self) -> List[VMSnapshot]:
        nodes = self.client.list_nodes()
        snapshots = []
        answered = 0
        for node in nodes:
            node_name = node.get("node")
            try:
                vms = self.client.list_node_vms(node_name)
            except (ProxmoxAPIError, HypervisorAuthError) as e:
                logger.warning("Skipping node %s: %s", node_name, e)
                continue
            answered += 1
            for vm in vms:
                if vm.get("template"):
                    continue
                snapshots.append(VMSnapshot(
                    vmid=str(vm.get("vmid")),
                    name=vm.get("name", ""),
                    status=vm.get("status", "unknown"),
                    memory_mb=int(vm.get("maxmem", 0)) // (1024 * 1024),
                    cpu_cores=vm.get("cpus"),
                    disk_gb=int(vm.get("maxdisk", 0)) // (1024 ** 3),
                    node=node_name,
                    tags=[t for t in str(vm.get("tags") or "").split(";") if t],
                ))
        if nodes and answered == 0:
            raise HypervisorError("No Proxmox node answered the VM listing.")
        return snapshots

    def list_for_owner(self, vms: Sequence, owner_sid: str) -> List[VMSnapshot]:
        snapshots = []
        for vm in vms:
            if not vm.vmid:
                logger.warning("VM %s of %s has no hypervisor id yet, skipping", vm.id, owner_sid)
                continue
            try:
                status = self.client.vm_status(self.node, vm.vmid)
            except (ProxmoxAPIError, HypervisorAuthError) as e:
                logger.warning("Skipping VM %s of %s: %s", vm.vmid, owner_sid, e)
                continue
            snapshots.append(snapshot_from_ledger(vm, status.get("status", "unknown"), node=self.node))
        return snapshots
