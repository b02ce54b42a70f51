import json
import logging
import os
import subprocess

from selfservice.services.exceptions import CloneError, DiskResizeError, TemplateFetchError

logger = logging.getLogger(__name__)


class ImageService:
    # 이미지 디렉터리가 root 소유이므로 sudo로 실행
    COMMAND_PREFIX = ["sudo"]

    def __init__(self, image_dir: str, base_image: str):
        """
        ImageService를 초기화합니다.

        Args:
            image_dir: VM 디스크 파일을 저장할 디렉터리.
            base_image: 모든 VM 디스크의 backing file이 되는 기반 이미지 경로.
        """
        self.image_dir = image_dir
        self.base_image = base_image

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(self.COMMAND_PREFIX + list(args), check=True, capture_output=True, text=True)

    def disk_path(self, disk_name: str) -> str:
        return os.path.join(self.image_dir, f"{disk_name}.qcow2")

    def validate_base_image(self) -> str:
        """
        기반 이미지가 실제로 존재하는지 확인하고 경로를 반환합니다.

        Raises:
            TemplateFetchError: 기반 이미지 파일이 없을 때.
        """
        if not os.path.exists(self.base_image):
            raise TemplateFetchError(f"Base image file not found on disk: {self.base_image}")
        return self.base_image

    def virtual_size_gb(self, filepath: str) -> int:
        """qemu-img info로 디스크 이미지의 가상 크기(GB)를 구합니다."""
        try:
            result = self._run("qemu-img", "info", "--output=json", filepath)
        except subprocess.CalledProcessError as e:
            raise TemplateFetchError(f"Failed to inspect image '{filepath}': {e.stderr}") from e
        except FileNotFoundError as e:
            raise TemplateFetchError("qemu-img command not found. Install qemu-utils.") from e
        return int(json.loads(result.stdout)["virtual-size"]) // (1024 ** 3)

    def create_vm_disk(self, disk_name: str, source_filepath: str) -> str:
        """
        CoW(Copy-on-Write) 방식으로 새 VM 디스크를 생성합니다.

        qemu-img 유틸리티를 사용하여 원본 이미지를 backing file으로 하는
        새로운 qcow2 디스크 이미지를 생성합니다.

        Args:
            disk_name: 새 디스크 파일명(확장자 제외).
            source_filepath: 원본이 될 backing file의 경로.

        Returns:
            새로 생성된 VM 디스크의 전체 경로.

        Raises:
            CloneError: 디스크 생성에 실패했을 때.
        """
        target_filepath = self.disk_path(disk_name)
        try:
            self._run(
                "qemu-img", "create",
                "-f", "qcow2",
                "-F", "qcow2",
                "-b", source_filepath,
                target_filepath,
            )
        except subprocess.CalledProcessError as e:
            raise CloneError(f"Failed to create CoW disk for {disk_name}: {e.stderr}") from e
        except FileNotFoundError as e:
            raise CloneError("qemu-img command not found. Install qemu-utils.") from e

        logger.info("Created disk %s backed by %s", target_filepath, source_filepath)
        return target_filepath

    def resize_disk(self, disk_filepath: str, size_gb: int) -> None:
        """디스크의 가상 크기를 size_gb로 늘립니다."""
        try:
            self._run("qemu-img", "resize", disk_filepath, f"{size_gb}G")
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise DiskResizeError(f"Failed to resize disk '{disk_filepath}' to {size_gb}G: {e}") from e
        logger.info("Resized disk %s to %sG", disk_filepath, size_gb)

    def delete_vm_disk(self, disk_filepath: str) -> bool:
        """
        VM 디스크 파일을 삭제합니다.

        Returns:
            성공적으로 삭제되었거나 파일이 원래 없었으면 True를 반환합니다.
        """
        if not os.path.exists(disk_filepath):
            logger.info("Disk file not found, skipping delete: %s", disk_filepath)
            return True
        self._run("rm", "-f", disk_filepath)
        logger.info("Disk file deleted: %s", disk_filepath)
        return True
