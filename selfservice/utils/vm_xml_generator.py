# selfservice/utils/vm_xml_generator.py
from functools import lru_cache
from pathlib import Path
from xml.sax.saxutils import escape

PACKAGE_ROOT = Path(__file__).resolve().parent.parent
TEMPLATE_PATH = PACKAGE_ROOT / 'configs' / 'vm_template.xml'


@lru_cache(maxsize=1)
def get_xml_template() -> str:
    """템플릿 파일을 읽어 XML 내용을 반환합니다. 처음 호출할 때 한 번만 읽습니다."""
    try:
        return TEMPLATE_PATH.read_text()
    except FileNotFoundError:
        raise FileNotFoundError(f"VM template file not found at {TEMPLATE_PATH}.")


def generate_vm_xml(vm_name, vm_uuid, cpu_count, ram_mb, image_filepath, description=""):
    """
    템플릿에 VM 스펙을 채워 넣어 최종 XML을 생성합니다.
    """
    # 메모리는 KiB 단위로 변환
    ram_kib = ram_mb * 1024

    return get_xml_template().format(
        vm_name=escape(vm_name),
        vm_uuid=vm_uuid,
        cpu_count=cpu_count,
        ram_kib=ram_kib,
        image_filepath=escape(image_filepath),
        description=escape(description or ""),
    )
