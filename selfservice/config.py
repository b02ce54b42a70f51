# selfservice/config.py
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got '{value}'.")


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class ResourceLimits:
    """VM 리소스 하한(거부)과 상한(조용히 잘라냄)."""
    min_memory_mb: int = 512
    max_memory_mb: int = 16384
    min_cpu_cores: int = 1
    max_cpu_cores: int = 8
    min_disk_gb: int = 10
    max_disk_gb: int = 500
    max_vms_per_owner: int = 2


@dataclass(frozen=True)
class ProxmoxSettings:
    url: str = ""
    node: str = ""
    username: str = ""
    password: str = ""
    template_vmid: int = 9000
    disk_bus: str = "scsi0"
    bridge: str = "vmbr1"
    cpu_type: str = "x86-64-v2-AES"
    cloud_init_user: str = "ubuntu"
    gateway: str = ""
    prefix_length: int = 24


@dataclass(frozen=True)
class VCenterSettings:
    url: str = ""
    username: str = ""
    password: str = ""
    cluster_id: str = ""
    folder_id: str = ""
    datastore_name: str = ""
    name_prefix: str = "AUTO"
    templates: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LibvirtSettings:
    uri: str = "qemu:///system"
    image_dir: str = "/var/lib/libvirt/images"
    base_image: str = "/var/lib/libvirt/images/ubuntu-base.qcow2"
    base_memory_mb: int = 1024
    base_cpu_cores: int = 1


@dataclass(frozen=True)
class FirewallSettings:
    url: str = ""
    username: str = ""
    password: str = ""
    name_prefix: str = "AUTO"
    rule_group: str = "Autonet"
    personal_ip_group: str = "Students Private IP's"
    source_networks: List[str] = field(default_factory=list)
    inbound_services: List[str] = field(default_factory=list)
    outbound_services: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DnsSettings:
    url: str = ""
    token: str = ""
    zone: str = ""
    domain_suffix: str = ""
    default_ttl: int = 3600


@dataclass(frozen=True)
class IPPoolSettings:
    first: str = ""
    last: str = ""
    excluded: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///selfservice.db"
    log_file: str = str(PROJECT_ROOT / "log" / "selfservice.log")
    verify_tls: bool = True
    request_timeout: int = 30
    task_timeout: int = 300
    default_lifetime_days: int = 168
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    proxmox: ProxmoxSettings = field(default_factory=ProxmoxSettings)
    vcenter: VCenterSettings = field(default_factory=VCenterSettings)
    libvirt: LibvirtSettings = field(default_factory=LibvirtSettings)
    firewall: FirewallSettings = field(default_factory=FirewallSettings)
    dns: DnsSettings = field(default_factory=DnsSettings)
    ip_pool: IPPoolSettings = field(default_factory=IPPoolSettings)


def load_firewall_policy(path: Optional[str]) -> Dict[str, List[str]]:
    """
    방화벽 정책 JSON 파일을 읽습니다.

    파일 형식은 {"sourceNetworks": [...], "services": [...],
    "outboundServices": [...], "min": ..., "max": ..., "excluded": [...]} 입니다.
    """
    if not path:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """환경 변수(및 .env 파일)에서 Settings를 만듭니다."""
    load_dotenv(env_file)

    policy = load_firewall_policy(os.getenv("FIREWALL_POLICY_FILE"))
    templates_raw = os.getenv("VCENTER_TEMPLATES", "")

    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        log_file=os.getenv("LOG_FILE", Settings.log_file),
        verify_tls=_get_bool("VERIFY_TLS", True),
        request_timeout=_get_int("REQUEST_TIMEOUT", 30),
        task_timeout=_get_int("TASK_TIMEOUT", 300),
        default_lifetime_days=_get_int("VM_DEFAULT_LIFETIME_DAYS", 168),
        limits=ResourceLimits(
            min_memory_mb=_get_int("VM_MIN_MEMORY", 512),
            max_memory_mb=_get_int("VM_MAX_MEMORY", 16384),
            min_cpu_cores=_get_int("VM_MIN_CPU_CORES", 1),
            max_cpu_cores=_get_int("VM_MAX_CPU_CORES", 8),
            min_disk_gb=_get_int("VM_MIN_DISK_SIZE", 10),
            max_disk_gb=_get_int("VM_MAX_DISK_SIZE", 500),
            max_vms_per_owner=_get_int("VM_MAX_PER_OWNER", 2),
        ),
        proxmox=ProxmoxSettings(
            url=os.getenv("PROXMOX_SERVER_URL", "").rstrip("/"),
            node=os.getenv("PROXMOX_NODE", ""),
            username=os.getenv("PVE_USERNAME", ""),
            password=os.getenv("PVE_PASSWORD", ""),
            template_vmid=_get_int("PROXMOX_TEMPLATE_VMID", 9000),
            disk_bus=os.getenv("PROXMOX_DISK_BUS", "scsi0"),
            bridge=os.getenv("PROXMOX_BRIDGE", "vmbr1"),
            cpu_type=os.getenv("PROXMOX_CPU_TYPE", "x86-64-v2-AES"),
            cloud_init_user=os.getenv("PROXMOX_CI_USER", "ubuntu"),
            gateway=os.getenv("PROXMOX_GATEWAY", ""),
            prefix_length=_get_int("PROXMOX_PREFIX_LENGTH", 24),
        ),
        vcenter=VCenterSettings(
            url=os.getenv("VCENTER_URL", "").rstrip("/"),
            username=os.getenv("VCENTER_USERNAME", ""),
            password=os.getenv("VCENTER_PASSWORD", ""),
            cluster_id=os.getenv("CLUSTER_ID", ""),
            folder_id=os.getenv("FOLDER_ID", ""),
            datastore_name=os.getenv("VCENTER_DATASTORE_NAME", ""),
            name_prefix=os.getenv("VCENTER_NAME_PREFIX", "AUTO"),
            templates=json.loads(templates_raw) if templates_raw else {},
        ),
        libvirt=LibvirtSettings(
            uri=os.getenv("LIBVIRT_URI", "qemu:///system"),
            image_dir=os.getenv("LIBVIRT_IMAGE_DIR", "/var/lib/libvirt/images"),
            base_image=os.getenv("LIBVIRT_BASE_IMAGE", "/var/lib/libvirt/images/ubuntu-base.qcow2"),
            base_memory_mb=_get_int("LIBVIRT_BASE_MEMORY", 1024),
            base_cpu_cores=_get_int("LIBVIRT_BASE_CPU_CORES", 1),
        ),
        firewall=FirewallSettings(
            url=os.getenv("SOPHOS_FIREWALL_URL", ""),
            username=os.getenv("SOPHOS_FIREWALL_USER", ""),
            password=os.getenv("SOPHOS_FIREWALL_PASS", ""),
            name_prefix=os.getenv("FIREWALL_NAME_PREFIX", "AUTO"),
            rule_group=os.getenv("FIREWALL_RULE_GROUP", "Autonet"),
            personal_ip_group=os.getenv("FIREWALL_PERSONAL_IP_GROUP", "Students Private IP's"),
            source_networks=policy.get("sourceNetworks") or _get_list("FIREWALL_SOURCE_NETWORKS"),
            inbound_services=policy.get("services") or _get_list("FIREWALL_INBOUND_SERVICES"),
            outbound_services=policy.get("outboundServices") or _get_list("FIREWALL_OUTBOUND_SERVICES"),
        ),
        dns=DnsSettings(
            url=os.getenv("TECHNITIUM_HOST", "").rstrip("/"),
            token=os.getenv("TECHNITIUM_API_TOKEN", ""),
            zone=os.getenv("DNS_ZONE", ""),
            domain_suffix=os.getenv("DOMAIN_PREFIX", ""),
            default_ttl=_get_int("DNS_DEFAULT_TTL", 3600),
        ),
        ip_pool=IPPoolSettings(
            first=policy.get("min") or os.getenv("IP_POOL_FIRST", ""),
            last=policy.get("max") or os.getenv("IP_POOL_LAST", ""),
            excluded=policy.get("excluded") or _get_list("IP_POOL_EXCLUDED"),
        ),
    )
