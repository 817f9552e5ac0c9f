# sandbox_vm/utils/descriptor_generator.py
import copy
import logging
import os
import tempfile
from pathlib import Path

import yaml

from sandbox_vm.config import PACKAGE_ROOT, Settings
from sandbox_vm.services.exceptions import DescriptorWriteError
from sandbox_vm.utils.endpoint_allocator import (
    EndpointPair,
    INTERNAL_CONTROL_PORT,
    INTERNAL_DISPLAY_PORT,
)

logger = logging.getLogger(__name__)

TEMPLATE_PATH = PACKAGE_ROOT / 'configs' / 'descriptor_template.yml'
SERVICE_NAME = "desktop"
INSTANCE_PREFIX = "sandbox-vm-"


def instance_name(vm_id: int) -> str:
    """런타임 인스턴스(compose 프로젝트 및 컨테이너)의 고정 이름."""
    return f"{INSTANCE_PREFIX}{vm_id}"


def get_descriptor_template() -> dict:
    """템플릿 파일을 읽어 디스크립터의 기본 구조를 반환합니다."""
    try:
        with open(TEMPLATE_PATH, 'r') as f:
            return yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"Descriptor template not found at {TEMPLATE_PATH}.")


# 템플릿 내용을 한 번만 읽어와서 저장
DESCRIPTOR_TEMPLATE = get_descriptor_template()


def render(vm_id: int, name: str, endpoints: EndpointPair, settings: Settings) -> bytes:
    """
    템플릿에 VM별 값을 채워 compose 형식의 디스크립터를 생성합니다.

    사용자가 입력한 이름은 라벨 값으로만 들어가며, 문자열 포매팅이 아니라
    YAML 직렬화를 거치므로 파일 구조를 바꿀 수 없습니다.
    """
    descriptor = copy.deepcopy(DESCRIPTOR_TEMPLATE)
    service = descriptor["services"][SERVICE_NAME]

    service["image"] = settings.image
    service["build"] = {
        "context": str(settings.build_context),
        "dockerfile": settings.dockerfile,
    }
    service["container_name"] = instance_name(vm_id)
    service["ports"] = [
        f"{endpoints.display_port}:{INTERNAL_DISPLAY_PORT}",
        f"{endpoints.control_port}:{INTERNAL_CONTROL_PORT}",
    ]
    service["labels"] = {
        "sandbox.vm.id": str(vm_id),
        "sandbox.vm.name": name,
    }
    return yaml.safe_dump(descriptor, sort_keys=False).encode("utf-8")


def descriptor_path(vm_id: int, config_dir: Path) -> Path:
    return Path(config_dir) / f"descriptor-vm-{vm_id}.yml"


def ensure_config_dir(config_dir: Path) -> Path:
    """디스크립터 디렉터리가 없으면 생성합니다."""
    config_dir = Path(config_dir)
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def write(vm_id: int, descriptor: bytes, config_dir: Path) -> Path:
    """
    디스크립터를 VM 전용 파일에 기록하고 경로를 반환합니다.

    임시 파일에 쓴 뒤 이름을 바꾸므로 절반만 쓰인 파일이 남지 않습니다.

    Raises:
        DescriptorWriteError: 디스크 부족, 권한 문제 등으로 쓰기에 실패했을 때.
    """
    target = descriptor_path(vm_id, config_dir)
    tmp_name = None
    try:
        ensure_config_dir(config_dir)
        with tempfile.NamedTemporaryFile(
            'wb', dir=target.parent, prefix=f".{target.name}.", delete=False
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(descriptor)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, target)
    except OSError as e:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise DescriptorWriteError(f"Failed to write descriptor for VM {vm_id} at {target}: {e}") from e

    logger.debug("Descriptor for VM %s written to %s", vm_id, target)
    return target


def remove(vm_id: int, config_dir: Path) -> None:
    """디스크립터 파일을 삭제합니다. 파일이 없으면 성공으로 간주합니다."""
    target = descriptor_path(vm_id, config_dir)
    try:
        target.unlink()
        logger.debug("Descriptor for VM %s removed: %s", vm_id, target)
    except FileNotFoundError:
        pass
