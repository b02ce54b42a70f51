from typing import Optional

from selfservice.config import Settings
from selfservice.hypervisors.base import IHypervisor, ProvisionedVM, VMSnapshot
from selfservice.services.exceptions import ValidationError
from selfservice.utils.cache import TimedCache

SUPPORTED_HYPERVISORS = ("proxmox", "vcenter", "libvirt")


def build_hypervisor(name: str, settings: Settings, cache: Optional[TimedCache] = None) -> IHypervisor:
    """
    이름에 맞는 하이퍼바이저 백엔드를 만듭니다.

    libvirt 백엔드는 libvirt-python이 설치된 경우에만 쓸 수 있으므로 필요할 때 import합니다.

    Raises:
        ValidationError: 지원하지 않는 하이퍼바이저 이름일 때.
    """
    cache = cache or TimedCache()
    if name == "proxmox":
        from selfservice.hypervisors.proxmox import ProxmoxClient, ProxmoxHypervisor
        client = ProxmoxClient(settings.proxmox, cache,
                               verify_tls=settings.verify_tls, timeout=settings.request_timeout)
        return ProxmoxHypervisor(client, settings)
    if name == "vcenter":
        from selfservice.hypervisors.vcenter import VCenterClient, VCenterHypervisor
        client = VCenterClient(settings.vcenter, cache,
                               verify_tls=settings.verify_tls, timeout=settings.request_timeout)
        return VCenterHypervisor(client, settings)
    if name == "libvirt":
        from selfservice.hypervisors.libvirt_backend import LibvirtHypervisor
        from selfservice.services.image_service import ImageService
        image_service = ImageService(settings.libvirt.image_dir, settings.libvirt.base_image)
        return LibvirtHypervisor(settings, image_service)
    raise ValidationError(f"Unsupported hypervisor '{name}'.", field="hypervisor")


__all__ = ["IHypervisor", "ProvisionedVM", "VMSnapshot", "SUPPORTED_HYPERVISORS", "build_hypervisor"]
