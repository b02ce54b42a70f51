# tests/utils/test_vm_xml_generator.py
import uuid
from selfservice.utils.vm_xml_generator import generate_vm_xml

def test_generate_vm_xml_successfully():
    """
    generate_vm_xml이 모든 값을 템플릿에 채워 넣은 XML을 만드는지 테스트합니다.
    """
    # 1. 준비 (Arrange)
    vm_name = "web1-3f2a9c1d"
    vm_uuid = str(uuid.uuid4())
    cpu_count = 2
    ram_mb = 2048
    image_filepath = f"/var/lib/libvirt/images/{vm_uuid}.qcow2"

    # 2. 실행 (Act)
    generated_xml = generate_vm_xml(
        vm_name=vm_name,
        vm_uuid=vm_uuid,
        cpu_count=cpu_count,
        ram_mb=ram_mb,
        image_filepath=image_filepath,
        description="owner: User One (u1)",
    )

    # 3. 단언 (Assert)
    assert f"<name>{vm_name}</name>" in generated_xml
    assert f"<uuid>{vm_uuid}</uuid>" in generated_xml
    assert f"<vcpu>{cpu_count}</vcpu>" in generated_xml
    assert "<description>owner: User One (u1)</description>" in generated_xml

    # RAM은 KiB로 변환되었는지 확인
    ram_kib = ram_mb * 1024
    assert f"<memory unit='KiB'>{ram_kib}</memory>" in generated_xml
    assert f"<currentMemory unit='KiB'>{ram_kib}</currentMemory>" in generated_xml

    # 이미지 파일 경로 확인
    assert f"<source file='{image_filepath}'/>" in generated_xml

    assert "<domain type='kvm'>" in generated_xml
    assert "<driver name='qemu' type='qcow2'/>" in generated_xml


def test_description_is_escaped():
    generated_xml = generate_vm_xml("web1", str(uuid.uuid4()), 1, 1024, "/images/a.qcow2",
                                    description="<b>Tom & Jerry</b>")

    assert "<description>&lt;b&gt;Tom &amp; Jerry&lt;/b&gt;</description>" in generated_xml
