# selfservice/hypervisors/vcenter.py
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from selfservice.config import Settings, VCenterSettings
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
    HypervisorAuthError,
    HypervisorConflictError,
    HypervisorError,
    HypervisorVmNotFoundError,
    TemplateFetchError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SESSION_CACHE_KEY = "vcenter:session"
DATASTORE_CACHE_KEY = "vcenter:datastore"
DATASTORE_TTL = 24 * 60 * 60
GIB = 1024 ** 3
# 템플릿의 첫 번째 가상 디스크 키
PRIMARY_DISK_KEY = "2000"


class VCenterAPIError(HypervisorError):
    """vCenter REST API가 오류 상태를 반환했을 때"""
    def __init__(self, message: str, status_code: Optional[int] = None, error_type: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type


class VCenterClient:
    """vSphere Automation REST API(/api) 클라이언트"""

    def __init__(self, settings: VCenterSettings, cache: TimedCache,
                 verify_tls: bool = True, timeout: int = 30,
                 session: Optional[requests.Session] = None):
        self.settings = settings
        self.base_url = settings.url.rstrip("/")
        self.cache = cache
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify_tls

    def _create_session(self) -> str:
        try:
            response = self.session.post(
                f"{self.base_url}/api/session",
                auth=(self.settings.username, self.settings.password),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise HypervisorAuthError(f"Cannot reach vCenter at {self.base_url}: {e}") from e
        if response.status_code not in (200, 201):
            raise HypervisorAuthError(f"vCenter authentication failed with status {response.status_code}")
        logger.info("Opened vCenter session as %s", self.settings.username)
        return response.json()

    def _session_is_valid(self, session_id: str) -> bool:
        try:
            response = self.session.get(
                f"{self.base_url}/api/session",
                headers={"vmware-api-session-id": session_id},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException:
            return False
        return response.status_code == 200

    def session_id(self) -> str:
        """캐시된 세션을 검증해서 쓰고, 만료되었으면 새로 만듭니다."""
        cached = self.cache.get(SESSION_CACHE_KEY)
        if cached and self._session_is_valid(cached):
            return cached
        self.cache.invalidate(SESSION_CACHE_KEY)
        return self.cache.get_or_refresh(SESSION_CACHE_KEY, self._create_session)

    def request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {"vmware-api-session-id": self.session_id()}
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise VCenterAPIError(f"vCenter request failed: {method} {path}: {e}") from e

        if response.status_code == 401:
            self.cache.invalidate(SESSION_CACHE_KEY)
            raise HypervisorAuthError("vCenter session was rejected")
        if response.status_code >= 400:
            error_type = ""
            try:
                error_type = (response.json() or {}).get("error_type", "")
            except ValueError:
                pass
            raise VCenterAPIError(
                f"vCenter request failed: {method} {path} | Status: {response.status_code} | Body: {response.text[:500]}",
                status_code=response.status_code,
                error_type=error_type,
            )
        if not response.content:
            return None
        return response.json()

    def datastore_id(self) -> str:
        def load():
            datastores = self.request(
                "GET", "api/vcenter/datastore", params={"names": self.settings.datastore_name}
            ) or []
            if not datastores:
                raise TemplateFetchError(f"Datastore '{self.settings.datastore_name}' not found.")
            return datastores[0]["datastore"]
        return self.cache.get_or_refresh(DATASTORE_CACHE_KEY, load, ttl=DATASTORE_TTL)

    def template(self, template_id: str) -> Dict[str, Any]:
        return self.request("GET", f"api/vcenter/vm-template/library-items/{template_id}") or {}

    def deploy(self, template_id: str, spec: Dict[str, Any]) -> str:
        return self.request(
            "POST",
            f"api/vcenter/vm-template/library-items/{template_id}",
            params={"action": "deploy"},
            json=spec,
        )

    def power(self, vm_id: str, action: str) -> None:
        self.request("POST", f"api/vcenter/vm/{vm_id}/power", params={"action": action})

    def get_vm(self, vm_id: str) -> Dict[str, Any]:
        return self.request("GET", f"api/vcenter/vm/{vm_id}") or {}

    def list_vms(self) -> List[Dict[str, Any]]:
        return self.request("GET", "api/vcenter/vm") or []

    def delete_vm(self, vm_id: str) -> None:
        self.request("DELETE", f"api/vcenter/vm/{vm_id}")


class VCenterHypervisor(IHypervisor):
    """콘텐츠 라이브러리 템플릿을 배포(deploy)하는 vCenter 백엔드입니다."""
    name = "vcenter"

    def __init__(self, client: VCenterClient, settings: Settings):
        self.client = client
        self.settings = settings

    def _template_id(self, operating_system: str) -> str:
        templates = self.settings.vcenter.templates
        if operating_system in templates:
            return templates[operating_system]
        raise ValidationError(f"No template configured for operating system '{operating_system}'.",
                              field="operating_system")

    @staticmethod
    def _template_floor(template: Dict[str, Any]):
        memory = int((template.get("memory") or {}).get("size_MiB") or 0)
        cores = int((template.get("cpu") or {}).get("count") or 0)
        disk = (template.get("disks") or {}).get(PRIMARY_DISK_KEY) or {}
        capacity = int((disk.get("disk_storage") or disk).get("capacity") or 0)
        return memory, cores, capacity // GIB

    def create(self, name, memory_mb, cpu_cores, disk_gb, owner_sid, owner_name,
               description="", operating_system="", subdomain=None) -> ProvisionedVM:
        memory_mb, cpu_cores, disk_gb = clamp_resources(self.settings.limits, memory_mb, cpu_cores, disk_gb)
        template_id = self._template_id(operating_system)

        try:
            template = self.client.template(template_id)
            datastore = self.client.datastore_id()
        except VCenterAPIError as e:
            raise TemplateFetchError(f"Failed to read template {template_id}: {e}") from e
        template_memory, template_cores, template_disk = self._template_floor(template)

        hardware = {}
        if memory_mb > template_memory:
            hardware["memory_update"] = {"memory": memory_mb}
        if cpu_cores > template_cores:
            hardware["cpu_update"] = {"num_cpus": cpu_cores}
        if disk_gb > template_disk:
            hardware["disks_to_update"] = {PRIMARY_DISK_KEY: {"capacity": disk_gb * GIB}}

        vcenter = self.settings.vcenter
        spec = {
            "name": f"{vcenter.name_prefix}-{owner_sid}-{name}",
            "description": f"owner: {owner_name} ({owner_sid})\n{description or ''}",
            "placement": {"cluster": vcenter.cluster_id, "folder": vcenter.folder_id},
            "disk_storage": {"datastore": datastore},
            "vm_home_storage": {"datastore": datastore},
            "powered_on": True,
        }
        if hardware:
            spec["hardware_customization"] = hardware

        try:
            vm_id = self.client.deploy(template_id, spec)
        except VCenterAPIError as e:
            if e.error_type == "ALREADY_EXISTS":
                raise HypervisorConflictError(f"VM '{spec['name']}' already exists on vCenter.") from e
            raise CloneError(f"Failed to deploy template {template_id}: {e}") from e

        logger.info("Deployed VM %s (%s) for %s", vm_id, spec["name"], owner_sid)
        return ProvisionedVM(
            vmid=str(vm_id),
            name=name,
            memory_mb=max(memory_mb, template_memory),
            cpu_cores=max(cpu_cores, template_cores),
            disk_gb=max(disk_gb, template_disk),
        )

    def destroy(self, vmid: str, owner_sid: str) -> None:
        try:
            vm = self.client.get_vm(vmid)
            if (vm.get("power_state") or "").upper() == "POWERED_ON":
                logger.info("Powering off VM %s before deletion", vmid)
                self.client.power(vmid, "stop")
            self.client.delete_vm(vmid)
        except VCenterAPIError as e:
            if e.status_code == 404 or e.error_type == "NOT_FOUND":
                raise HypervisorVmNotFoundError(f"VM {vmid} does not exist on vCenter.", vmid=vmid) from e
            raise
        logger.info("Deleted VM %s owned by %s", vmid, owner_sid)

    def list_all(self) -> List[VMSnapshot]:
        return [
            VMSnapshot(
                vmid=vm.get("vm"),
                name=vm.get("name", ""),
                status=vm.get("power_state", "UNKNOWN"),
                memory_mb=vm.get("memory_size_MiB"),
                cpu_cores=vm.get("cpu_count"),
            )
            for vm in self.client.list_vms()
        ]

    def list_for_owner(self, vms: Sequence, owner_sid: str) -> List[VMSnapshot]:
        snapshots = []
        for vm in vms:
            if not vm.vmid:
                logger.warning("VM %s of %s has no hypervisor id yet, skipping", vm.id, owner_sid)
                continue
            try:
                live = self.client.get_vm(vm.vmid)
            except (VCenterAPIError, HypervisorAuthError) as e:
                logger.warning("Skipping VM %s of %s: %s", vm.vmid, owner_sid, e)
                continue
            snapshots.append(snapshot_from_ledger(vm, live.get("power_state", "UNKNOWN")))
        return snapshots
